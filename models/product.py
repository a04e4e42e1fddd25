# models/product.py
from typing import Optional
from datetime import datetime

from utils.datetime_utils import utc_now
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field

class Product(SQLModel, table=True):
    __tablename__ = "products"

    id: Optional[int] = Field(default=None, primary_key=True)
    sku: str = Field(index=True)
    name: str
    description: Optional[str] = None
    manufacturer: Optional[str] = None
    product_family: Optional[str] = None
    brand: Optional[str] = None
    available_qty: int = 0
    moq: int = 1                  # minimum order quantity
    list_price: Optional[float] = None
    unit_price: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
