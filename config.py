"""
Runtime configuration

Every setting is read from the environment. Loan and fine policy values are
plain numbers here so they can be tuned per deployment and injected in tests.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from fines import FinePolicy


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    borrow_days: int = Field(7, ge=1)
    renew_days: int = Field(7, ge=1)
    max_renewals: int = Field(2, ge=0)

    fine_per_day: int = Field(2000, ge=0)
    fine_grace_hours: int = Field(2, ge=0)
    fine_max: int = Field(50000, ge=0)

    vnpay_tmn_code: Optional[str] = None
    vnpay_hash_secret: Optional[str] = None
    vnpay_payment_url: Optional[str] = None
    vnpay_return_url: Optional[str] = None
    vnpay_expire_minutes: int = Field(15, ge=1)

    frontend_url: str = "http://localhost:5173"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            borrow_days=_int_env("BORROW_DAYS", 7),
            renew_days=_int_env("RENEW_DAYS", 7),
            max_renewals=_int_env("MAX_RENEWALS", 2),
            fine_per_day=_int_env("FINE_PER_DAY", 2000),
            fine_grace_hours=_int_env("FINE_GRACE_HOURS", 2),
            fine_max=_int_env("FINE_MAX", 50000),
            vnpay_tmn_code=os.getenv("VNPAY_TMN_CODE"),
            vnpay_hash_secret=os.getenv("VNPAY_HASH_SECRET"),
            vnpay_payment_url=os.getenv("VNPAY_PAYMENT_URL"),
            vnpay_return_url=os.getenv("VNPAY_RETURN_URL"),
            vnpay_expire_minutes=_int_env("VNPAY_EXPIRE_MINUTES", 15),
            frontend_url=(os.getenv("FRONTEND_URL") or "http://localhost:5173").strip().rstrip("/"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def fine_policy(self) -> FinePolicy:
        return FinePolicy(
            per_day=self.fine_per_day,
            grace_hours=self.fine_grace_hours,
            max_fine=self.fine_max,
        )
