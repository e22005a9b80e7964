"""
Collection schemas for the tours service

MongoDB collections are validated with the Pydantic models below before any
write reaches the store. Create models describe a full document; update
models make every field optional so PATCH bodies are validated as partial
documents.

Collections:
- tours: tour catalogue (ratingsAverage/ratingsQuantity are not part of any
  model: only the ratings refresh writes them)
- reviews: user reviews of tours
- users: accounts
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Role = Literal["user", "guide", "lead-guide", "admin"]
Difficulty = Literal["easy", "medium", "difficult"]

ROLES = ("user", "guide", "lead-guide", "admin")


class Schema(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


# Tours

class GeoPoint(Schema):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[lng, lat]")
    address: Optional[str] = None
    description: Optional[str] = None


class TourLocation(GeoPoint):
    day: Optional[int] = Field(None, ge=0)


class Tour(Schema):
    name: str = Field(..., min_length=10, max_length=40)
    duration: int = Field(..., gt=0, description="Days")
    maxGroupSize: int = Field(..., gt=0)
    difficulty: Difficulty
    price: float = Field(..., ge=0)
    priceDiscount: Optional[float] = Field(None, ge=0)
    summary: str = Field(..., min_length=1)
    description: Optional[str] = None
    imageCover: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list)
    startDates: List[datetime] = Field(default_factory=list)
    secretTour: bool = False
    startLocation: Optional[GeoPoint] = None
    locations: List[TourLocation] = Field(default_factory=list)
    guides: List[str] = Field(default_factory=list, description="User ids")

    @model_validator(mode="after")
    def discount_below_price(self):
        if self.priceDiscount is not None and self.priceDiscount >= self.price:
            raise ValueError(f"Discount price ({self.priceDiscount}) should be below the regular price.")
        return self


class TourUpdate(Schema):
    name: Optional[str] = Field(None, min_length=10, max_length=40)
    duration: Optional[int] = Field(None, gt=0)
    maxGroupSize: Optional[int] = Field(None, gt=0)
    difficulty: Optional[Difficulty] = None
    price: Optional[float] = Field(None, ge=0)
    priceDiscount: Optional[float] = Field(None, ge=0)
    summary: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    imageCover: Optional[str] = Field(None, min_length=1)
    images: Optional[List[str]] = None
    startDates: Optional[List[datetime]] = None
    secretTour: Optional[bool] = None
    startLocation: Optional[GeoPoint] = None
    locations: Optional[List[TourLocation]] = None
    guides: Optional[List[str]] = None

    @model_validator(mode="after")
    def discount_below_price(self):
        if self.priceDiscount is not None and self.price is not None and self.priceDiscount >= self.price:
            raise ValueError(f"Discount price ({self.priceDiscount}) should be below the regular price.")
        return self


# Reviews

class Review(Schema):
    review: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    tour: str = Field(..., description="Reference to tour _id")
    user: str = Field(..., description="Reference to user _id")


class ReviewUpdate(Schema):
    review: Optional[str] = Field(None, min_length=1)
    rating: Optional[int] = Field(None, ge=1, le=5)


# Users

class UserSignup(Schema):
    name: str = Field(..., min_length=1)
    email: EmailStr
    photo: Optional[str] = None
    password: str = Field(..., min_length=8)
    passwordConfirm: str

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.passwordConfirm:
            raise ValueError("Passwords are not the same!")
        return self


class UserUpdate(Schema):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    photo: Optional[str] = None
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower() if v else v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UpdatePasswordRequest(BaseModel):
    passwordCurrent: str
    password: str = Field(..., min_length=8)
    passwordConfirm: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.passwordConfirm:
            raise ValueError("Passwords are not the same!")
        return self
