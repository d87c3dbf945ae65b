from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict


@dataclass
class LoopSettings:
    """
    User preferences for the loop, stored as a named settings blob.
    """
    closed_loop: bool = False
    enable_smb: bool = False
    bolus_increment: float = 0.1  # Units, converged from pump rounding
    unsuspend_if_no_temp: bool = False
    skip_neutral_temps: bool = False
    carbs_req_threshold: float = 1.0  # grams

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})
