from __future__ import annotations
from typing import Optional

from pydantic import BaseModel, Field

class BuyerLogin(BaseModel):
    email: str = ""
    phone: str = ""

class AdminLogin(BaseModel):
    id: str
    password: str

class ParticipantSubmit(BaseModel):
    participant_index: int
    name: str = ""
    gender: str = ""  # M | F
    birth_date: str = ""  # YYYYMMDD
    phone: str = ""
    tshirt_size: str = ""
    emergency_contact: str = ""
    emergency_relation: str = ""

class OrderUpdate(BaseModel):
    buyer_id: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    buyer_gender: Optional[str] = None
    course: Optional[str] = None
    total_participants: Optional[int] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    zipcode: Optional[str] = None
    address: Optional[str] = None
    address_detail: Optional[str] = None

class ParticipantUpdate(BaseModel):
    name: Optional[str] = None
    gender: Optional[str] = None
    birth_date: Optional[str] = None
    phone: Optional[str] = None
    course: Optional[str] = None
    tshirt_size: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_relation: Optional[str] = None
    is_completed: Optional[bool] = None

class CancelRequest(BaseModel):
    order_ids: list[int] = Field(default_factory=list)
