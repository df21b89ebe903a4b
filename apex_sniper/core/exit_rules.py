"""
Exit Rule Engine

Pure decision function: given a position, its strategy settings and the
current price, decide what (if anything) to sell. No I/O, no state.

Bracket percentages are percentages of the ORIGINAL position. Since each sale
shrinks what is held, bracket n sells

    sell_percent_n / (100 - sum(sell_percent of brackets before n))

of the current holding. A 50/30/20 ladder on 1000 tokens therefore goes
1000 -> 500 -> 200 -> 0. Brackets adding up to less than 100 leave the
rest held for the moon bag or the stop loss.
"""

from typing import List

from ..config.strategy_config import StrategySettings, MAX_BRACKETS
from ..utils.helpers import format_multiplier
from .models import Position, PositionStatus, SellAction

STOP_LOSS = "stop_loss"
MOON_BAG = "moon_bag"


def bracket_reason(index: int, multiplier: float) -> str:
    return f"tp{index}_{format_multiplier(multiplier)}x"


def evaluate(position: Position, settings: StrategySettings, current_price: float) -> List[SellAction]:
    """
    First matching rule wins: stop loss, then the next bracket, then the moon bag.

    Returns:
        [] for no action, otherwise a single SellAction
    """
    if position.status == PositionStatus.CLOSED:
        return []
    if position.entry_price <= 0 or current_price <= 0 or position.size_remaining <= 0:
        return []

    ratio = current_price / position.entry_price

    if settings.stop_loss_percent > 0 and ratio <= 1 - settings.stop_loss_percent / 100:
        return [SellAction(fraction=1.0, reason=STOP_LOSS)]

    brackets = settings.take_profit_brackets[:MAX_BRACKETS]
    flags = position.bracket_flags
    sold_before = 0.0

    for index, bracket in enumerate(brackets, start=1):
        if flags[index - 1]:
            sold_before += bracket.sell_percent
            continue

        if ratio < bracket.multiplier:
            return []

        held_percent = 100.0 - sold_before
        fraction = 1.0 if held_percent <= 0 else min(1.0, bracket.sell_percent / held_percent)

        return [SellAction(
            fraction=fraction,
            reason=bracket_reason(index, bracket.multiplier),
            bracket_index=index,
        )]

    # Every configured bracket has fired; only the moon bag is left
    if settings.moon_bag_percent > 0 and settings.moon_bag_multiplier > 0 \
            and ratio >= settings.moon_bag_multiplier:
        return [SellAction(fraction=1.0, reason=MOON_BAG)]

    return []
