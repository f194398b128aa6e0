"""Configuration defaults for the Open Dental connector.

Every value can be overridden through the environment; explicit constructor
arguments take precedence over both.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError

DEFAULT_BASE_URL = os.getenv("OPEN_DENTAL_API_URL", "https://api.opendental.com/api/v1")
DEFAULT_MIN_INTERVAL_SECONDS = float(os.getenv("OD_RATE_LIMIT_SECONDS", "1.0"))
DEFAULT_TIMEOUT_SECONDS = float(os.getenv("OD_REQUEST_TIMEOUT", "30"))
DEFAULT_MAX_ATTEMPTS = int(os.getenv("OD_RETRY_ATTEMPTS", "4"))
DEFAULT_BACKOFF_BASE_SECONDS = float(os.getenv("OD_BACKOFF_BASE", "1.0"))
DEFAULT_COOLDOWN_SECONDS = float(os.getenv("OD_RATE_LIMIT_COOLDOWN_SECONDS", "60"))
DEFAULT_PAGE_SIZE = int(os.getenv("OD_PAGE_SIZE", "500"))
PATTERN_QUANTUM_MINUTES = int(os.getenv("OD_PATTERN_QUANTUM_MINUTES", "5"))
DEFAULT_TIMEZONE = os.getenv("OD_DEFAULT_TIMEZONE", "America/Chicago")
DEFAULT_SYNC_LOOKBACK_DAYS = int(os.getenv("OD_SYNC_LOOKBACK_DAYS", "30"))
DEFAULT_SYNC_LOOKAHEAD_DAYS = int(os.getenv("OD_SYNC_LOOKAHEAD_DAYS", "90"))


@dataclass(frozen=True)
class Credentials:
    """Developer/customer key pair for one practice."""

    developer_key: str
    customer_key: str

    def __repr__(self) -> str:
        return "Credentials(developer_key=***, customer_key=***)"


@dataclass
class PracticeConfig:
    """Per-practice settings looked up by practice id."""

    practice_id: str
    clinic_num: Optional[int] = None
    timezone: str = DEFAULT_TIMEZONE
    operatory_providers: Dict[int, List[int]] = field(default_factory=dict)
    confirmation_code: Optional[int] = None
    base_url: str = DEFAULT_BASE_URL
    sync_lookback_days: int = DEFAULT_SYNC_LOOKBACK_DAYS
    sync_lookahead_days: int = DEFAULT_SYNC_LOOKAHEAD_DAYS

    def __post_init__(self) -> None:
        if not self.practice_id:
            raise ValueError("practice_id must be provided")
        _ = self.tz  # fail fast on unknown zone names

    @property
    def tz(self) -> tzinfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError("timezone", f"unknown timezone {self.timezone!r}") from exc

    def operatories_for_provider(self, provider_id: int) -> List[int]:
        """Operatories mapped to ``provider_id``, in configuration order."""

        return [op for op, providers in self.operatory_providers.items() if provider_id in providers]

    @classmethod
    def from_mapping(cls, practice_id: str, payload: Mapping[str, object]) -> "PracticeConfig":
        raw_ops = payload.get("operatory_providers") or {}
        if not isinstance(raw_ops, Mapping):
            raise ValidationError("operatory_providers", "must be an object of operatory -> provider ids")
        operatory_providers: Dict[int, List[int]] = {}
        for op, providers in raw_ops.items():
            if isinstance(providers, (int, str)):
                providers = [providers]
            try:
                operatory_providers[int(op)] = [int(p) for p in providers]  # type: ignore[union-attr]
            except (TypeError, ValueError) as exc:
                raise ValidationError("operatory_providers", f"invalid entry for operatory {op!r}") from exc

        clinic = payload.get("clinic_num")
        confirmation = payload.get("confirmation_code")
        return cls(
            practice_id=practice_id,
            clinic_num=int(clinic) if clinic not in (None, "") else None,  # type: ignore[arg-type]
            timezone=str(payload.get("timezone") or DEFAULT_TIMEZONE),
            operatory_providers=operatory_providers,
            confirmation_code=int(confirmation) if confirmation not in (None, "") else None,  # type: ignore[arg-type]
            base_url=str(payload.get("base_url") or DEFAULT_BASE_URL),
            sync_lookback_days=int(payload.get("sync_lookback_days", DEFAULT_SYNC_LOOKBACK_DAYS)),  # type: ignore[arg-type]
            sync_lookahead_days=int(payload.get("sync_lookahead_days", DEFAULT_SYNC_LOOKAHEAD_DAYS)),  # type: ignore[arg-type]
        )
