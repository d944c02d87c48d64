from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    """Accepts camelCase field names from the storefront as well as snake_case."""

    model_config = ConfigDict(populate_by_name=True)


class SyncStockRequest(CamelModel):
    """Request body for POST /sync-stock."""

    product_id: str = Field(..., alias="productId", min_length=1)
    quantity: int = Field(..., gt=0)
    action: str = Field("reduce", pattern="^(reduce|add)$")


class CreateProductRequest(CamelModel):
    """Admin product upload."""

    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: float = Field(0.0, ge=0)
    stock: int = Field(..., ge=0)
    base_stock: Optional[int] = Field(None, alias="baseStock", ge=0)


class TransactionItemSchema(CamelModel):
    """One line of a checkout."""

    id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    name: Optional[str] = None
    price: Optional[float] = None


class CreateTransactionRequest(CamelModel):
    """Checkout logged by the storefront before payment confirmation."""

    customer_name: str = Field("", alias="customerName")
    customer_email: str = Field("", alias="customerEmail")
    amount: float = Field(0.0, ge=0)
    delivery_method: str = Field("", alias="deliveryMethod")
    delivery_address: str = Field("", alias="deliveryAddress")
    delivery_fee: str = Field("0", alias="deliveryFee")
    items: List[TransactionItemSchema] = Field(..., min_length=1)


class RemapItemRequest(CamelModel):
    """Replace a transaction item's product id with an existing product."""

    from_product_id: str = Field(..., alias="fromProductId", min_length=1)
    to_product_id: str = Field(..., alias="toProductId", min_length=1)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    service: str
    version: str
