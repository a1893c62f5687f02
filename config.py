# config.py
import os
from decimal import Decimal
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _split(value: str) -> List[str]:
  return [x.strip() for x in value.split(",") if x.strip()]


class BillingSettings(BaseModel):
  grace_period_days: int = Field(default=14, ge=0)
  tax_percentage_bps: int = Field(default=0, ge=0)  # 1000 = 10%
  anomaly_window: int = Field(default=6, ge=1)
  anomaly_factor: Decimal = Decimal("1.5")
  anomaly_ceiling_m3: int = Field(default=100, ge=0)
  overdue_sweep_seconds: int = Field(default=3600, ge=0)
  batch_workers: int = Field(default=4, ge=1)

  @classmethod
  def from_env(cls) -> "BillingSettings":
    return cls(
      grace_period_days=int(os.getenv("GRACE_PERIOD_DAYS", "14")),
      tax_percentage_bps=int(os.getenv("TAX_PERCENTAGE_BPS", "0")),
      anomaly_window=int(os.getenv("ANOMALY_WINDOW", "6")),
      anomaly_factor=Decimal(os.getenv("ANOMALY_FACTOR", "1.5").strip()),
      anomaly_ceiling_m3=int(os.getenv("ANOMALY_CEILING_M3", "100")),
      overdue_sweep_seconds=int(os.getenv("OVERDUE_SWEEP_SECONDS", "3600")),
      batch_workers=int(os.getenv("BATCH_WORKERS", "4")),
    )


settings = BillingSettings.from_env()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
CORS_ORIGINS = _split(os.getenv("CORS_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173"))
