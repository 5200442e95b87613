from __future__ import annotations

from ..extensions import db
from giftflow.time_utils import to_utc_z


ACCOUNT_STATUS_ACTIVE = "active"
ACCOUNT_STATUS_DISABLED = "disabled"


class MarketplaceAccount(db.Model):
    """
    Credentials used to place purchase-on-behalf orders upstream.

    Exactly one account should be default + active; fulfillment refuses to
    build a request without one.
    """
    __tablename__ = "marketplace_accounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    account_name = db.Column(db.String(120), nullable=False, unique=True)
    retailer = db.Column(db.String(32), nullable=False, default="amazon")
    api_key = db.Column(db.String(255), nullable=False)
    retailer_email = db.Column(db.String(255), nullable=True)
    retailer_password = db.Column(db.String(255), nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False, index=True)
    account_status = db.Column(db.String(16), nullable=False, default=ACCOUNT_STATUS_ACTIVE, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        # Never expose secrets
        return {
            "id": self.id,
            "account_name": self.account_name,
            "retailer": self.retailer,
            "retailer_email": self.retailer_email,
            "is_default": self.is_default,
            "account_status": self.account_status,
            "created_at": to_utc_z(self.created_at),
        }


class BusinessPaymentMethod(db.Model):
    """Card the business pays the marketplace with."""
    __tablename__ = "business_payment_methods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name_on_card = db.Column(db.String(120), nullable=False)
    card_token = db.Column(db.String(255), nullable=True)  # provider vault reference
    last_four = db.Column(db.String(4), nullable=True)
    expiration_month = db.Column(db.Integer, nullable=True)
    expiration_year = db.Column(db.Integer, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def is_complete(self) -> bool:
        return bool(self.card_token and self.expiration_month and self.expiration_year)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name_on_card": self.name_on_card,
            "last_four": self.last_four,
            "expiration_month": self.expiration_month,
            "expiration_year": self.expiration_year,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
