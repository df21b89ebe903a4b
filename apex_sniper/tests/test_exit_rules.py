"""
Unit tests for the exit rule engine

Tests core functionality:
1. Take-profit ladder fractions
2. Stop-loss boundary
3. Moon bag handling
"""

import pytest

from apex_sniper.config.strategy_config import StrategySettings, TakeProfitBracket
from apex_sniper.core.exit_rules import MOON_BAG, STOP_LOSS, bracket_reason, evaluate
from apex_sniper.core.models import Position, PositionStatus, SnipeMode


def make_position(size_remaining=1000.0, flags=(False, False, False), status=PositionStatus.OPEN,
                  entry_price=1.0):
    return Position(
        id=1,
        user_id="user-1",
        token_id="Mint111",
        mode=SnipeMode.PRIMARY,
        entry_price=entry_price,
        entry_cost=entry_price * 1000,
        size_bought=1000.0,
        size_remaining=size_remaining,
        status=status,
        bracket_1_hit=flags[0],
        bracket_2_hit=flags[1],
        bracket_3_hit=flags[2],
    )


class TestTakeProfitLadder:
    """Default 50@2x / 30@5x / 20@10x ladder"""

    def test_below_first_bracket_does_nothing(self):
        assert evaluate(make_position(), StrategySettings(), 1.9) == []

    def test_first_bracket_sells_half(self):
        actions = evaluate(make_position(), StrategySettings(), 2.0)
        assert len(actions) == 1
        assert actions[0].fraction == pytest.approx(0.5)
        assert actions[0].bracket_index == 1
        assert actions[0].reason == "tp1_2x"

    def test_second_bracket_is_share_of_what_is_left(self):
        """30% of the original is 60% of the 500 still held"""
        position = make_position(size_remaining=500.0, flags=(True, False, False))
        actions = evaluate(position, StrategySettings(), 5.0)
        assert actions[0].fraction == pytest.approx(0.6)
        assert actions[0].bracket_index == 2

    def test_last_bracket_of_full_ladder_sells_everything(self):
        position = make_position(size_remaining=200.0, flags=(True, True, False))
        actions = evaluate(position, StrategySettings(), 10.0)
        assert actions[0].fraction == 1.0
        assert actions[0].is_full_exit
        assert actions[0].reason == "tp3_10x"

    def test_ladder_under_100_percent_keeps_the_rest(self):
        """25% of the original at each bracket, the other half is never sold by the ladder"""
        settings = StrategySettings(take_profit_brackets=[
            TakeProfitBracket(sell_percent=25, multiplier=2),
            TakeProfitBracket(sell_percent=25, multiplier=3),
        ], moon_bag_percent=0)
        position = make_position(size_remaining=750.0, flags=(True, False, False))

        action = evaluate(position, settings, 3.0)[0]

        assert action.fraction == pytest.approx(1 / 3)
        assert not action.is_full_exit
        position.size_remaining -= position.size_remaining * action.fraction
        position.bracket_2_hit = True
        assert position.size_remaining == pytest.approx(500.0)
        assert evaluate(position, settings, 50.0) == []

    def test_ladder_walks_1000_500_200_0(self):
        settings = StrategySettings()
        position = make_position()
        for price, expected_remaining in ((2.0, 500.0), (5.0, 200.0), (10.0, 0.0)):
            action = evaluate(position, settings, price)[0]
            position.size_remaining -= position.size_remaining * action.fraction
            setattr(position, f"bracket_{action.bracket_index}_hit", True)
            assert position.size_remaining == pytest.approx(expected_remaining)

    def test_one_bracket_per_evaluation(self):
        """A 20x jump only fires the first un-hit bracket"""
        actions = evaluate(make_position(), StrategySettings(), 20.0)
        assert len(actions) == 1
        assert actions[0].bracket_index == 1

    def test_hit_brackets_never_fire_again(self):
        position = make_position(size_remaining=500.0, flags=(True, False, False))
        assert evaluate(position, StrategySettings(), 3.0) == []

    def test_fraction_capped_at_whole_holding(self):
        settings = StrategySettings(take_profit_brackets=[
            TakeProfitBracket(sell_percent=60, multiplier=2),
            TakeProfitBracket(sell_percent=40, multiplier=3),
        ], moon_bag_percent=0)
        position = make_position(size_remaining=400.0, flags=(True, False, False))
        assert evaluate(position, settings, 3.0)[0].fraction == 1.0


class TestStopLoss:
    """Stop loss at 50%"""

    def test_sells_everything_just_below_threshold(self):
        actions = evaluate(make_position(), StrategySettings(stop_loss_percent=50), 0.49)
        assert actions[0].reason == STOP_LOSS
        assert actions[0].fraction == 1.0

    def test_holds_just_above_threshold(self):
        assert evaluate(make_position(), StrategySettings(stop_loss_percent=50), 0.51) == []

    def test_fires_exactly_at_threshold(self):
        actions = evaluate(make_position(), StrategySettings(stop_loss_percent=50), 0.5)
        assert actions[0].reason == STOP_LOSS

    def test_zero_disables_stop_loss(self):
        assert evaluate(make_position(), StrategySettings(stop_loss_percent=0), 0.01) == []

    def test_applies_after_partial_take_profit(self):
        position = make_position(size_remaining=500.0, flags=(True, False, False))
        actions = evaluate(position, StrategySettings(stop_loss_percent=50), 0.4)
        assert actions[0].reason == STOP_LOSS


class TestMoonBag:
    """Moon bag kept after the last bracket"""

    def moon_settings(self, multiplier):
        return StrategySettings(
            take_profit_brackets=[
                TakeProfitBracket(sell_percent=50, multiplier=2),
                TakeProfitBracket(sell_percent=30, multiplier=5),
            ],
            moon_bag_percent=20,
            moon_bag_multiplier=multiplier,
        )

    def test_last_bracket_leaves_moon_bag(self):
        position = make_position(size_remaining=500.0, flags=(True, False, False))
        action = evaluate(position, self.moon_settings(0), 5.0)[0]
        assert action.fraction == pytest.approx(0.6)
        assert not action.is_full_exit

    def test_zero_multiplier_holds_forever(self):
        position = make_position(size_remaining=200.0, flags=(True, True, False))
        assert evaluate(position, self.moon_settings(0), 1000.0) == []

    def test_moon_bag_sells_at_its_multiplier(self):
        position = make_position(size_remaining=200.0, flags=(True, True, False))
        assert evaluate(position, self.moon_settings(20), 19.0) == []
        actions = evaluate(position, self.moon_settings(20), 20.0)
        assert actions[0].reason == MOON_BAG
        assert actions[0].fraction == 1.0


class TestNoAction:
    def test_closed_position(self):
        position = make_position(status=PositionStatus.CLOSED)
        assert evaluate(position, StrategySettings(), 100.0) == []

    def test_unknown_entry_price(self):
        assert evaluate(make_position(entry_price=0.0), StrategySettings(), 5.0) == []

    def test_empty_position(self):
        assert evaluate(make_position(size_remaining=0.0), StrategySettings(), 5.0) == []


def test_bracket_reason_formatting():
    assert bracket_reason(1, 2.0) == "tp1_2x"
    assert bracket_reason(2, 2.5) == "tp2_2.5x"
