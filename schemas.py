from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    MAX_AMOUNT,
    MAX_UTC_OFFSET,
    MIN_AMOUNT,
    MIN_UTC_OFFSET,
    AccountCategory,
    AccountType,
    CategoryType,
    TransactionEditScope,
    TransactionType,
)


class UserRegisterIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=32, pattern=r"^[A-Za-z0-9_.-]+$")
    email: str = Field(..., min_length=3, max_length=100, pattern=r"^[^@\s]+@[^@\s]+$")
    nickname: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=6, max_length=128)
    default_currency: str = Field(..., min_length=3, max_length=3)
    first_day_of_week: int = Field(default=0, ge=0, le=6)
    language: str = Field(default="en", max_length=10)


class UserSettingsIn(BaseModel):
    """Partial update: only fields that are present are applied."""

    model_config = ConfigDict(extra="forbid")

    nickname: Optional[str] = Field(default=None, min_length=1, max_length=64)
    default_currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    default_account_id: Optional[int] = Field(default=None, gt=0)
    transaction_edit_scope: Optional[TransactionEditScope] = None
    first_day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    language: Optional[str] = Field(default=None, max_length=10)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    category: AccountCategory
    type: AccountType = AccountType.single_account
    icon: int = Field(default=1, ge=1)
    color: str = Field(default="000000", pattern=r"^[0-9a-fA-F]{6}$")
    currency: str = Field(..., min_length=3, max_length=3)
    balance: int = Field(default=0, ge=MIN_AMOUNT, le=MAX_AMOUNT)
    comment: str = Field(default="", max_length=255)
    sub_accounts: list["AccountIn"] = Field(default_factory=list)


class SubAccountModifyIn(BaseModel):
    id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=32)
    icon: int = Field(default=1, ge=1)
    color: str = Field(default="000000", pattern=r"^[0-9a-fA-F]{6}$")
    comment: str = Field(default="", max_length=255)
    hidden: bool = False


class AccountModifyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    category: AccountCategory
    icon: int = Field(default=1, ge=1)
    color: str = Field(default="000000", pattern=r"^[0-9a-fA-F]{6}$")
    comment: str = Field(default="", max_length=255)
    hidden: bool = False
    sub_accounts: list[SubAccountModifyIn] = Field(default_factory=list)


class DisplayOrderIn(BaseModel):
    id: int = Field(..., gt=0)
    display_order: int = Field(..., ge=1)


class HideIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)
    hidden: bool


class ClearDataIn(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    type: CategoryType
    parent_id: Optional[int] = Field(default=None, gt=0)
    icon: int = Field(default=1, ge=1)
    color: str = Field(default="000000", pattern=r"^[0-9a-fA-F]{6}$")
    comment: str = Field(default="", max_length=255)


class CategoryModifyIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    icon: int = Field(default=1, ge=1)
    color: str = Field(default="000000", pattern=r"^[0-9a-fA-F]{6}$")
    comment: str = Field(default="", max_length=255)
    hidden: bool = False


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)


class GeoLocation(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class TransactionFieldsIn(BaseModel):
    category_id: Optional[int] = Field(default=None, gt=0)
    time: int = Field(..., gt=0)
    utc_offset: int = Field(default=0, ge=MIN_UTC_OFFSET, le=MAX_UTC_OFFSET)
    source_account_id: int = Field(..., gt=0)
    source_amount: int = Field(..., ge=MIN_AMOUNT, le=MAX_AMOUNT)
    destination_account_id: Optional[int] = Field(default=None, gt=0)
    destination_amount: Optional[int] = Field(default=None, ge=MIN_AMOUNT, le=MAX_AMOUNT)
    hide_amount: bool = False
    tag_ids: list[int] = Field(default_factory=list)
    comment: str = Field(default="", max_length=255)
    geo_location: Optional[GeoLocation] = None


class TransactionCreateIn(TransactionFieldsIn):
    type: TransactionType


class TransactionModifyIn(TransactionFieldsIn):
    pass


AccountIn.model_rebuild()
