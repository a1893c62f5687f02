# money.py
# All amounts are integer minor units. Nothing here touches float except
# share(), which is only for display percentages.
from typing import Optional


def percent_of(amount: int, bps: int) -> int:
  """amount * bps / 10000, rounded half up."""
  if bps == 0 or amount == 0:
    return 0
  return (amount * bps + 5000) // 10000


def share(part: int, whole: int) -> float:
  if whole == 0:
    return 0.0
  return round(part * 100 / whole, 1)


def format_rupiah(amount: Optional[int]) -> str:
  value = amount or 0
  sign = "-" if value < 0 else ""
  return f"Rp {sign}{abs(value):,}".replace(",", ".")
