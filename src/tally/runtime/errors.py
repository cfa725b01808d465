# src/tally/runtime/errors.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

Json = Dict[str, Any]


class ErrorKind(str, Enum):
    """Canonical rejection kinds. The value is what callers see in `TallyError.code`."""

    PAUSED = "Paused"
    SELF_TRANSFER_FORBIDDEN = "SelfTransferForbidden"
    TRADING_DISABLED = "TradingDisabled"
    EXCEEDS_MAX_TX = "ExceedsMaxTx"
    EXCEEDS_MAX_WALLET = "ExceedsMaxWallet"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INSUFFICIENT_ALLOWANCE = "InsufficientAllowance"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_SPLIT = "InvalidSplit"
    UNAUTHORIZED_CALLER = "UnauthorizedCaller"
    INVALID_ACCOUNT = "InvalidAccount"
    INVALID_METRIC = "InvalidMetric"
    NO_REWARD = "NoReward"
    EXCEEDS_PER_CALL_CAP = "ExceedsPerCallCap"
    EXCEEDS_DAILY_CAP = "ExceedsDailyCap"
    INSUFFICIENT_POOL = "InsufficientPool"
    REENTRANT_CALL = "ReentrantCall"
    NOT_ADMINISTRATOR = "NotAdministrator"
    OWNERSHIP_RENOUNCE_DISABLED = "OwnershipRenounceDisabled"

    def __str__(self) -> str:
        return str(self.value)


@dataclass
class TallyError(Exception):
    """Canonical error type: every rejected call raises one of these.

    `code` is an ErrorKind value, `reason` a snake_case detail.
    """

    code: str
    reason: str
    details: Optional[Json] = None

    def __post_init__(self) -> None:
        self.code = str(ErrorKind(self.code).value)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.code)

    def to_json(self) -> Json:
        return {"ok": False, "code": self.code, "reason": self.reason, "details": self.details or {}}

    def __str__(self) -> str:
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"


@dataclass
class LedgerError(TallyError):
    """Ledger and transfer-policy rejections."""


@dataclass
class AccessError(TallyError):
    """Administrative access-control rejections."""


@dataclass
class RewardError(TallyError):
    """Reward engine rejections."""
