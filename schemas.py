"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.
"""
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from config import PLACEHOLDER_IMAGE

PRODUCT_STATUSES = ("available", "outOfStock", "discontinued")


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    phone: str = Field(..., min_length=1)
    role: Literal["user", "admin"] = "user"


class Category(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    slug: str = Field(..., description="URL-safe identifier")
    description: str = Field(..., min_length=1)
    image: str = PLACEHOLDER_IMAGE
    parent: Optional[ObjectId] = None
    featured: bool = False
    order: int = 0


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(..., min_length=1)
    slug: str = Field(..., description="URL-safe identifier, set once")
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    original_price: float = Field(0, ge=0)
    discount: int = 0
    category: ObjectId
    brand: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)
    images: List[str] = []
    main_image: str = PLACEHOLDER_IMAGE
    featured: bool = False
    free_shipping: bool = False
    specifications: Dict[str, Any] = {}
    sold: int = 0
    average_rating: float = 0
    num_reviews: int = 0
    status: Literal["available", "outOfStock", "discontinued"] = "available"


class Review(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: ObjectId
    product: ObjectId
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


# Request payloads

class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: str = Field(..., min_length=1)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class CategoryPayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    image: Optional[str] = None
    parent: Optional[str] = None
    featured: bool = False
    order: int = 0


class CategoryUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None
    parent: Optional[str] = None
    featured: Optional[bool] = None
    order: Optional[int] = None


class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)
