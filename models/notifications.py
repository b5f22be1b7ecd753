"""
Notification request models

Fields are optional at the schema level so the routers can report every
missing field at once in the `missing` map.
"""
from typing import List, Optional, Union

from pydantic import BaseModel

Scalar = Union[str, int, float]


class SaleData(BaseModel):
    Sale_id: Optional[Scalar] = None
    Saledate: Optional[str] = None


class CartItem(BaseModel):
    item_id: Optional[Scalar] = None
    item_name: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[float] = None
    total: Optional[float] = None

    def is_complete(self) -> bool:
        return all([self.item_id, self.item_name, self.price, self.quantity, self.total])


class SaleNotificationRequest(BaseModel):
    userId: Optional[str] = None
    saleData: Optional[SaleData] = None
    cartItems: Optional[List[CartItem]] = None
    totalAmount: Optional[float] = None


class PdfNotificationRequest(BaseModel):
    userId: Optional[str] = None
    userEmail: Optional[str] = None
    pdfBase64: Optional[str] = None
    filename: Optional[str] = None
