from ktra.grouping import group_rows, starts_new_order

from conftest import make_row, sample_rows


def test_groups_follow_amount_rows():
    report = group_rows(sample_rows())
    assert [g.primary.line for g in report.groups] == [2, 3, 5, 6]
    assert [g.total_participants for g in report.groups] == [1, 3, 1, 1]
    assert [[line.row.line for line in g.lines] for g in report.groups] == [[2], [3, 4], [5], [6]]
    assert report.orphans == []


def test_participant_counts_are_conserved():
    rows = sample_rows()
    report = group_rows(rows)
    assert report.total_participants == sum(r.quantity for r in rows)
    for g in report.groups:
        assert g.total_participants == sum(line.quantity for line in g.lines)
        assert g.total_participants >= 1


def test_continuation_course_falls_back_to_first_line():
    rows = [
        make_row(2, buyer_email="a@x.com", product_name="하프 코스", quantity=1, final_amount=50000),
        make_row(3, product_name="추가 참가자", quantity=2),
        make_row(4, product_name="5K 일반", quantity=1),
    ]
    (group,) = group_rows(rows).groups
    assert [line.course for line in group.lines] == ["Half", "Half", "5K"]
    assert group.total_participants == 4


def test_orphan_rows_are_reported():
    rows = [
        make_row(2, product_name="10K", quantity=1),
        make_row(3, buyer_email="a@x.com", product_name="10K", final_amount=40000),
        make_row(4, buyer_email="", product_name="5K", final_amount=20000),
    ]
    report = group_rows(rows)
    assert [g.primary.line for g in report.groups] == [3]
    assert [(o.line, o.reason) for o in report.orphans] == [
        (2, "continuation row before any order"),
        (4, "amount without buyer email"),
    ]


def test_zero_amount_continues_the_pending_order():
    rows = [
        make_row(2, buyer_email="a@x.com", product_name="10K", final_amount=40000),
        make_row(3, buyer_email="a@x.com", product_name="10K", final_amount=0),
    ]
    (group,) = group_rows(rows).groups
    assert group.total_participants == 2


def test_start_policy_can_be_injected():
    rows = [
        make_row(2, buyer_email="a@x.com", product_name="10K"),
        make_row(3, buyer_email="b@x.com", product_name="5K"),
        make_row(4, product_name="5K"),
    ]
    report = group_rows(rows, starts_order=lambda r: bool(r.buyer_email))
    assert [g.total_participants for g in report.groups] == [1, 2]


def test_default_policy_needs_amount_and_email():
    assert starts_new_order(make_row(buyer_email="a@x.com", final_amount=1000))
    assert not starts_new_order(make_row(buyer_email="a@x.com"))
    assert not starts_new_order(make_row(final_amount=1000))
