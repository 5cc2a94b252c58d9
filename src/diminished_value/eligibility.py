from __future__ import annotations

from typing import Mapping

# Money-back guarantee eligibility per pre-accident value bucket.
GUARANTEE_ELIGIBILITY: Mapping[str, bool] = {
    "<5000": False,
    "5000-10000": True,
    "10000-20000": True,
    "20000-30000": True,
    "30000-40000": True,
    "40000-50000": True,
    "50000-75000": True,
    ">75000": True,
}


def is_guarantee_eligible(bucket: str | None, table: Mapping[str, bool] = GUARANTEE_ELIGIBILITY) -> bool:
    if not bucket:
        return False
    return table.get(bucket, False)
