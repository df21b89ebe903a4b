"""
Strategy settings per user and snipe mode.

Defaults are resolved at read time (built-in values overridden by the operator
YAML file) and the full struct is validated at write time.
"""

import logging
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional, List

import yaml

from ..constants import LAMPORTS_PER_SOL
from ..exceptions import ConfigurationException

logger = logging.getLogger(__name__)

MAX_BRACKETS = 3
SNIPE_MODES = ("primary", "bundle")

DEFAULT_STRATEGY_PATH = Path(__file__).with_name("strategy_defaults.yaml")


@dataclass
class TakeProfitBracket:
    """Sell `sell_percent` of the ORIGINAL position once price/entry >= multiplier"""
    sell_percent: float
    multiplier: float


def _default_brackets() -> List[TakeProfitBracket]:
    return [
        TakeProfitBracket(sell_percent=50.0, multiplier=2.0),
        TakeProfitBracket(sell_percent=30.0, multiplier=5.0),
        TakeProfitBracket(sell_percent=20.0, multiplier=10.0),
    ]


@dataclass
class StrategySettings:
    """Trading parameters for one user in one snipe mode"""
    buy_amount: float = 0.1              # SOL
    slippage_percent: float = 20.0
    tip_amount: float = 0.005            # SOL, 0 disables the bundle path
    priority_fee: int = 100_000          # lamports
    stop_loss_percent: float = 50.0      # 0 disables
    take_profit_brackets: List[TakeProfitBracket] = field(default_factory=_default_brackets)
    moon_bag_percent: float = 0.0
    moon_bag_multiplier: float = 0.0     # 0 = hold forever
    auto_buy_enabled: bool = False
    max_open_positions: int = 0          # 0 = unlimited

    @property
    def tip_lamports(self) -> int:
        return int(round(self.tip_amount * LAMPORTS_PER_SOL))

    @property
    def priority_fee_sol(self) -> float:
        return self.priority_fee / LAMPORTS_PER_SOL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategySettings":
        """Create from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (data or {}).items() if k in known}
        if "take_profit_brackets" in values:
            values["take_profit_brackets"] = [
                b if isinstance(b, TakeProfitBracket) else TakeProfitBracket(**b)
                for b in values["take_profit_brackets"] or []
            ]
        return cls(**values)

    def merged(self, changes: Dict[str, Any]) -> "StrategySettings":
        """Return a copy with `changes` applied on top"""
        data = self.to_dict()
        data.update(changes)
        return StrategySettings.from_dict(data)

    def validate(self) -> List[str]:
        """Validate the whole struct, return list of errors"""
        errors = []

        if self.buy_amount <= 0:
            errors.append("buy_amount must be > 0")

        if self.slippage_percent <= 0 or self.slippage_percent > 100:
            errors.append("slippage_percent must be between 0 and 100")

        if self.tip_amount < 0:
            errors.append("tip_amount must be >= 0")

        if self.priority_fee < 0:
            errors.append("priority_fee must be >= 0")

        if self.stop_loss_percent < 0 or self.stop_loss_percent >= 100:
            errors.append("stop_loss_percent must be between 0 and 100 (0 disables)")

        brackets = self.take_profit_brackets
        if len(brackets) > MAX_BRACKETS:
            errors.append(f"at most {MAX_BRACKETS} take profit brackets are allowed")

        for idx, bracket in enumerate(brackets, start=1):
            if bracket.sell_percent <= 0 or bracket.sell_percent > 100:
                errors.append(f"bracket {idx}: sell_percent must be between 0 and 100")
            if bracket.multiplier <= 1:
                errors.append(f"bracket {idx}: multiplier must be > 1")
            if idx > 1 and bracket.multiplier <= brackets[idx - 2].multiplier:
                errors.append(f"bracket {idx}: multiplier must be greater than bracket {idx - 1}")

        if self.moon_bag_percent < 0 or self.moon_bag_percent > 100:
            errors.append("moon_bag_percent must be between 0 and 100")

        if self.moon_bag_multiplier != 0 and self.moon_bag_multiplier <= 1:
            errors.append("moon_bag_multiplier must be 0 (hold) or > 1")

        total = sum(b.sell_percent for b in brackets) + self.moon_bag_percent
        if total > 100:
            errors.append(f"bracket sell percentages plus moon bag add up to {total:g}%, max is 100%")

        if self.max_open_positions < 0:
            errors.append("max_open_positions must be >= 0 (0 = unlimited)")

        return errors


class StrategyDefaults:
    """
    Operator-level defaults per snipe mode.

    File layout:
        defaults:            # applied to every mode
          buy_amount: 0.1
        modes:
          bundle:            # per-mode overrides
            slippage_percent: 25

    A missing file means built-in defaults only.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else DEFAULT_STRATEGY_PATH
        self._by_mode: Dict[str, StrategySettings] = {}
        self.reload()

    def reload(self):
        """(Re)read the YAML file"""
        data: Dict[str, Any] = {}
        if self.config_path.exists():
            with open(self.config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            logger.info(f"Strategy defaults loaded from {self.config_path}")
        else:
            logger.info(f"No strategy defaults at {self.config_path}, using built-ins")

        common = data.get("defaults") or {}
        modes = data.get("modes") or {}

        by_mode = {}
        for mode in SNIPE_MODES:
            settings = StrategySettings().merged(common).merged(modes.get(mode) or {})
            errors = settings.validate()
            if errors:
                raise ConfigurationException(
                    f"Invalid strategy defaults for mode '{mode}'",
                    path=str(self.config_path),
                    errors="; ".join(errors),
                )
            by_mode[mode] = settings
        self._by_mode = by_mode

    def for_mode(self, mode: str) -> StrategySettings:
        """Fresh copy of the defaults for `mode`"""
        base = self._by_mode.get(mode)
        if base is None:
            raise ValueError(f"Unknown snipe mode: {mode}")
        return StrategySettings.from_dict(base.to_dict())
