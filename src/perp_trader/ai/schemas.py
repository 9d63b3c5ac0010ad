"""Oracle output schema and tolerant response parsing."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from perp_trader.types import Side

Action = Literal["open_long", "open_short", "close_long", "close_short", "hold", "wait"]

_OPEN_ACTIONS = {"open_long", "open_short"}
_CLOSE_ACTIONS = {"close_long", "close_short"}
_SKIPPED_ACTIONS = {"no_trade"}

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([\]}])")


class TradingDecision(BaseModel):
    """One action proposed by the decision oracle."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, allow_inf_nan=False)

    action: Action
    symbol: str | None = None
    position_size_usd: float | None = Field(default=None, gt=0.0)
    quantity: float | None = Field(default=None, gt=0.0)
    leverage: int | None = Field(default=None, ge=1)
    stop_loss: float | None = Field(default=None, gt=0.0)
    take_profit: float | None = Field(
        default=None,
        gt=0.0,
        validation_alias=AliasChoices("take_profit", "profit_target"),
    )
    reasoning: str = ""
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    invalidation_condition: str | None = None
    risk_usd: float | None = Field(default=None, ge=0.0)

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("symbol", mode="before")
    @classmethod
    def normalize_symbol(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @field_validator(
        "position_size_usd",
        "quantity",
        "stop_loss",
        "take_profit",
        "risk_usd",
        mode="before",
    )
    @classmethod
    def empty_numbers_to_none(cls, v: Any) -> Any:
        # models emit 0 or "" for "not set"
        if v in (None, "", 0, "0"):
            return None
        if isinstance(v, (int, float)) and not math.isfinite(float(v)):
            raise ValueError("value_must_be_finite")
        return v

    @field_validator("leverage", mode="before")
    @classmethod
    def coerce_leverage(cls, v: Any) -> Any:
        if v in (None, ""):
            return None
        value = float(v)
        if not math.isfinite(value):
            raise ValueError("leverage_must_be_finite")
        return int(round(value))

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, v: Any) -> Any:
        """Accept 0-1, 0-100 or a "75%" string; store as 0-1."""
        if v in (None, ""):
            return None
        if isinstance(v, str):
            v = v.strip().rstrip("%").strip()
        value = float(v)
        if not math.isfinite(value):
            raise ValueError("confidence_must_be_finite")
        return value / 100.0 if value > 1.0 else value

    @field_validator("reasoning", mode="before")
    @classmethod
    def reasoning_to_text(cls, v: Any) -> Any:
        return "" if v is None else str(v)

    @model_validator(mode="after")
    def check_action_fields(self) -> TradingDecision:
        if self.action in _OPEN_ACTIONS or self.action in _CLOSE_ACTIONS:
            if not self.symbol:
                raise ValueError(f"{self.action}_requires_symbol")
        if self.action in _OPEN_ACTIONS and self.position_size_usd is None and self.quantity is None:
            raise ValueError("open_requires_position_size_usd_or_quantity")
        return self

    @property
    def side(self) -> Side | None:
        if self.action in ("open_long", "close_long"):
            return "LONG"
        if self.action in ("open_short", "close_short"):
            return "SHORT"
        return None

    @property
    def is_open(self) -> bool:
        return self.action in _OPEN_ACTIONS

    @property
    def is_close(self) -> bool:
        return self.action in _CLOSE_ACTIONS

    @property
    def is_actionable(self) -> bool:
        return self.is_open or self.is_close

    @classmethod
    def wait(cls, reasoning: str) -> TradingDecision:
        """Synthetic no-op decision."""
        return cls(action="wait", reasoning=reasoning)


@dataclass(slots=True)
class OracleParseResult:
    """Decisions extracted from one oracle response."""

    decisions: list[TradingDecision] = field(default_factory=list)
    chain_of_thought: str = ""
    error: str | None = None
    dropped: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_oracle_response(text: str) -> OracleParseResult:
    """Extract a decision list from free-form model output.

    Never raises: text without a usable JSON payload yields an empty decision
    list with ``error`` set, and individual malformed items are dropped with
    the reason recorded in ``dropped``.
    """
    if not text or not text.strip():
        return OracleParseResult(error="empty_response")

    found = _extract_json_candidate(text)
    if found is None:
        return OracleParseResult(chain_of_thought=text.strip(), error="no_json_found")

    candidate, index = found
    chain_of_thought = text[:index].strip()
    try:
        parsed = json.loads(_sanitize(candidate))
    except json.JSONDecodeError as exc:
        return OracleParseResult(chain_of_thought=chain_of_thought, error=f"invalid_json: {exc.msg}")

    items = parsed if isinstance(parsed, list) else [parsed]
    result = OracleParseResult(chain_of_thought=chain_of_thought)
    for item in items:
        if not isinstance(item, dict) or not item.get("action"):
            result.dropped.append("item_without_action")
            continue
        if str(item["action"]).strip().lower() in _SKIPPED_ACTIONS:
            continue
        try:
            result.decisions.append(TradingDecision.model_validate(item))
        except ValidationError as exc:
            first = exc.errors()[0]
            result.dropped.append(f"{item.get('action')}:{item.get('symbol')}: {first['msg']}")
    return result


def _sanitize(candidate: str) -> str:
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", candidate.strip())
    return cleaned.replace("\t", " ").replace("\r", "")


def _extract_json_candidate(text: str) -> tuple[str, int] | None:
    """First fenced block, else the first balanced ``[...]`` or ``{...}``."""
    fenced = _FENCED_RE.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip(), fenced.start()

    for start, ch in enumerate(text):
        if ch not in "[{":
            continue
        close_ch = "]" if ch == "[" else "}"
        depth = 0
        for end in range(start, len(text)):
            c = text[end]
            if c == ch:
                depth += 1
            elif c == close_ch:
                depth -= 1
            if depth == 0:
                return text[start : end + 1].strip(), start
    return None
