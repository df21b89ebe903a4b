"""
Tests for the trading service

Tests core functionality:
1. Buys: admission, in-flight guard, retries, position creation
2. Manual sells under a lease
3. Signals and the dispatcher
4. Wallet and settings pass-throughs
"""

import asyncio
import json

import pytest

from apex_sniper.core.models import Signal, SnipeMode


class TestOpenPosition:
    @pytest.mark.asyncio
    async def test_verified_buy_creates_position(self, engine, mint):
        engine.fund("user-1")

        outcome = await engine.trading.open_position("user-1", mint, SnipeMode.PRIMARY, token_symbol="APEX")

        assert outcome.success
        row = engine.db.get_position(outcome.position_id)
        assert row["status"] == "open"
        assert row["size_bought"] == pytest.approx(1000.0)
        assert row["entry_price"] == pytest.approx(0.0001)
        assert row["entry_cost"] == pytest.approx(0.1)
        assert row["entry_broadcast_id"] == outcome.broadcast_id
        assert row["token_symbol"] == "APEX"

    @pytest.mark.asyncio
    async def test_no_tokens_received_creates_nothing(self, engine, mint):
        engine.fund("user-1")
        engine.chain.deliver = False

        outcome = await engine.trading.open_position("user-1", mint)

        assert not outcome.success
        assert outcome.error_type == "NoTokensReceived"
        assert outcome.broadcast_id
        assert outcome.broadcast_id in outcome.error
        assert engine.db.get_active_positions() == []
        assert engine.db.get_trades() == []

    @pytest.mark.asyncio
    async def test_position_limit_does_not_apply_to_manual_buys(self, engine, mint):
        engine.fund("user-1")
        engine.settings.update_settings("user-1", SnipeMode.PRIMARY, max_open_positions=1)
        engine.open_position("user-1", "MintA1111111111111111111111111111111111111")

        outcome = await engine.trading.open_position("user-1", mint)

        assert outcome.success
        assert engine.db.count_active_positions("user-1") == 2

    @pytest.mark.asyncio
    async def test_custom_amount(self, engine, mint):
        engine.fund("user-1")
        outcome = await engine.trading.open_position("user-1", mint, amount=0.2)
        assert outcome.data["tokens"] == pytest.approx(2000.0)

    @pytest.mark.asyncio
    async def test_transient_quote_failures_retried(self, engine, mint):
        engine.fund("user-1")
        engine.chain.quote_failures = 2

        outcome = await engine.trading.open_position("user-1", mint)

        assert outcome.success
        assert len(engine.quotes.calls) == 3

    @pytest.mark.asyncio
    async def test_persistent_quote_failure_reported(self, engine, mint):
        engine.fund("user-1")
        engine.chain.quote_failures = 10

        outcome = await engine.trading.open_position("user-1", mint)

        assert not outcome.success
        assert outcome.error_type == "QuoteUnavailable"
        assert len(engine.quotes.calls) == 3

    @pytest.mark.asyncio
    async def test_landed_swap_is_not_bought_twice(self, engine, mint):
        engine.fund("user-1")
        engine.jito.accept = False
        engine.jito.lands_anyway = True
        engine.chain.send_failures = 10

        outcome = await engine.trading.open_position("user-1", mint)

        assert outcome.success
        assert len(engine.quotes.calls) == 1
        assert engine.db.count_active_positions("user-1") == 1

    @pytest.mark.asyncio
    async def test_simulation_failure_not_retried(self, engine, mint):
        engine.fund("user-1")
        engine.chain.sim_error = "InstructionError(0, Custom(6002))"

        outcome = await engine.trading.open_position("user-1", mint)

        assert outcome.error_type == "SimulationFailed"
        assert len(engine.quotes.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_buy_of_same_token_rejected(self, engine, mint):
        engine.fund("user-1")
        gate = asyncio.Event()
        original = engine.quotes.get_swap_transaction

        async def slow_quote(*args, **kwargs):
            await gate.wait()
            return await original(*args, **kwargs)

        engine.quotes.get_swap_transaction = slow_quote

        first = asyncio.create_task(engine.trading.open_position("user-1", mint))
        await asyncio.sleep(0)
        second = await engine.trading.open_position("user-1", mint)
        gate.set()

        assert second.error_type == "BuyInFlight"
        assert (await first).success
        assert engine.db.count_active_positions("user-1") == 1


class TestManualSells:
    @pytest.mark.asyncio
    async def test_sell_fraction(self, engine, mint):
        position_id = engine.open_position("user-1", mint, size=1000.0, entry_price=0.001)
        engine.price_feed.prices[mint] = 0.002

        outcome = await engine.trading.sell_fraction(position_id, 25)

        assert outcome.success
        row = engine.db.get_position(position_id)
        assert row["status"] == "partial"
        assert row["size_remaining"] == pytest.approx(750.0)
        assert position_id in engine.locks._locks
        trade = engine.db.get_trades(position_id=position_id)[-1]
        assert trade["side"] == "sell"
        assert trade["trigger_reason"] == "manual"
        assert trade["sol_amount"] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_close_position(self, engine, mint):
        position_id = engine.open_position("user-1", mint, entry_price=0.001)
        engine.price_feed.prices[mint] = 0.001

        outcome = await engine.trading.close_position(position_id)

        assert outcome.success
        row = engine.db.get_position(position_id)
        assert row["status"] == "closed"
        assert row["size_remaining"] == 0.0
        assert row["close_reason"] == "manual_close"
        assert position_id not in engine.locks._locks

    @pytest.mark.asyncio
    async def test_full_exit_capped_by_wallet_balance(self, engine, mint):
        position_id = engine.open_position("user-1", mint, size=1000.0, entry_price=0.001)
        public_key = engine.vault.public_key("user-1")
        engine.chain.tokens[(public_key, mint)] = 990.0
        engine.price_feed.prices[mint] = 0.001

        await engine.trading.close_position(position_id)

        assert engine.quotes.calls[-1][3] == pytest.approx(990.0)
        assert engine.db.get_position(position_id)["status"] == "closed"

    @pytest.mark.asyncio
    async def test_dust_full_exit_force_closes(self, engine, mint):
        position_id = engine.open_position("user-1", mint, size=10.0, entry_price=0.00001)
        engine.price_feed.prices[mint] = 0.00001

        outcome = await engine.trading.close_position(position_id)

        assert outcome.success
        assert outcome.data["dust"] is True
        row = engine.db.get_position(position_id)
        assert row["status"] == "closed"
        assert row["close_reason"] == "manual_close_dust"
        assert engine.quotes.calls == []

    @pytest.mark.asyncio
    async def test_failed_sell_leaves_position(self, engine, mint):
        position_id = engine.open_position("user-1", mint, entry_price=0.001)
        engine.price_feed.prices[mint] = 0.001
        engine.chain.sim_error = "InstructionError(0, Custom(6003))"

        outcome = await engine.trading.sell_fraction(position_id, 50)

        assert not outcome.success
        assert outcome.error_type == "SimulationFailed"
        row = engine.db.get_position(position_id)
        assert row["size_remaining"] == 1000.0
        assert row["version"] == 0

    @pytest.mark.asyncio
    async def test_invalid_percent(self, engine, mint):
        position_id = engine.open_position("user-1", mint)
        outcome = await engine.trading.sell_fraction(position_id, 0)
        assert outcome.error_type == "InvalidAmount"

    @pytest.mark.asyncio
    async def test_unknown_position(self, engine):
        outcome = await engine.trading.sell_fraction(12345, 50)
        assert outcome.error_type == "PositionNotFound"

    @pytest.mark.asyncio
    async def test_closed_position(self, engine, mint):
        position_id = engine.open_position("user-1", mint)
        engine.db.force_close_position(position_id, "manual")
        outcome = await engine.trading.sell_fraction(position_id, 50)
        assert outcome.error_type == "PositionClosed"

    @pytest.mark.asyncio
    async def test_busy_position(self, engine, mint):
        position_id = engine.open_position("user-1", mint)
        async with engine.locks.lease(position_id):
            outcome = await engine.trading.sell_fraction(position_id, 50)
        assert outcome.error_type == "PositionBusy"

    @pytest.mark.asyncio
    async def test_sell_all(self, engine):
        a = engine.open_position("user-1", "MintA1111111111111111111111111111111111111", entry_price=0.001)
        b = engine.open_position("user-1", "MintB1111111111111111111111111111111111111", entry_price=0.001)
        engine.price_feed.prices.update({
            "MintA1111111111111111111111111111111111111": 0.001,
            "MintB1111111111111111111111111111111111111": 0.001,
        })

        outcomes = await engine.trading.sell_all("user-1")

        assert [o.success for o in outcomes] == [True, True]
        assert engine.db.get_position(a)["status"] == "closed"
        assert engine.db.get_position(b)["status"] == "closed"

    @pytest.mark.asyncio
    async def test_force_close(self, engine, mint):
        position_id = engine.open_position("user-1", mint)
        outcome = await engine.trading.force_close(position_id, "rugged")
        assert outcome.success
        assert engine.db.get_position(position_id)["close_reason"] == "rugged"
        assert engine.quotes.calls == []
        assert position_id not in engine.locks._locks

    @pytest.mark.asyncio
    async def test_position_with_pnl(self, engine, mint):
        position_id = engine.open_position("user-1", mint, entry_price=0.001)
        engine.price_feed.prices[mint] = 0.003

        position = await engine.trading.get_position_with_pnl(position_id)

        assert position.unrealized_pnl_percent == pytest.approx(200.0)
        assert engine.db.get_position(position_id)["current_price"] == 0.003


class TestSignals:
    @pytest.mark.asyncio
    async def test_limit_reached_makes_no_buy_attempt(self, engine, mint):
        engine.settings.update_settings("user-1", SnipeMode.PRIMARY, auto_buy_enabled=True, max_open_positions=2)
        engine.open_position("user-1", "MintA1111111111111111111111111111111111111")
        engine.open_position("user-1", "MintB1111111111111111111111111111111111111")

        assert await engine.trading.handle_signal(Signal("user-1", mint)) is None

        assert engine.quotes.calls == []
        assert engine.db.count_active_positions("user-1") == 2

    @pytest.mark.asyncio
    async def test_in_flight_buys_count_towards_limit(self, engine):
        engine.fund("user-1")
        engine.settings.update_settings("user-1", SnipeMode.PRIMARY, auto_buy_enabled=True, max_open_positions=1)
        gate = asyncio.Event()
        original = engine.quotes.get_swap_transaction

        async def slow_quote(*args, **kwargs):
            await gate.wait()
            return await original(*args, **kwargs)

        engine.quotes.get_swap_transaction = slow_quote

        first = asyncio.create_task(
            engine.trading.handle_signal(Signal("user-1", "MintA1111111111111111111111111111111111111"))
        )
        await asyncio.sleep(0)
        second = await engine.trading.handle_signal(Signal("user-1", "MintB1111111111111111111111111111111111111"))
        gate.set()

        assert second is None
        assert (await first).success
        assert engine.db.count_active_positions("user-1") == 1

    @pytest.mark.asyncio
    async def test_skipped_without_auto_buy(self, engine, mint):
        engine.fund("user-1")
        assert await engine.trading.handle_signal(Signal("user-1", mint)) is None
        assert engine.quotes.calls == []

    @pytest.mark.asyncio
    async def test_buys_with_auto_buy(self, engine, mint):
        engine.fund("user-1")
        engine.settings.update_settings("user-1", SnipeMode.BUNDLE, auto_buy_enabled=True, buy_amount=0.2)

        outcome = await engine.trading.handle_signal(Signal("user-1", mint, mode=SnipeMode.BUNDLE))

        assert outcome.success
        row = engine.db.get_position(outcome.position_id)
        assert row["mode"] == "bundle"
        assert row["entry_cost"] == pytest.approx(0.2)
        assert engine.db.get_trades(position_id=outcome.position_id)[0]["trigger_reason"] == "signal"

    @pytest.mark.asyncio
    async def test_dispatcher_drains_queue(self, engine, mint):
        engine.fund("user-1")
        engine.settings.update_settings("user-1", SnipeMode.PRIMARY, auto_buy_enabled=True)
        stop = asyncio.Event()

        dispatcher = asyncio.create_task(engine.trading.run_signal_dispatcher(stop))
        engine.trading.submit_signal(Signal("user-1", mint))
        await asyncio.wait_for(engine.trading.signal_queue.join(), timeout=5)
        stop.set()
        await asyncio.wait_for(dispatcher, timeout=5)

        assert engine.db.count_active_positions("user-1") == 1


class TestWalletAndSettings:
    def test_generate_and_export(self, engine):
        public_key = engine.trading.generate_wallet("user-1").data["public_key"]

        exported = engine.trading.export_wallet("user-1")

        assert exported.success
        assert exported.data["public_key"] == public_key
        assert len(json.loads(exported.data["secret"])) == 64

    def test_import_invalid_key(self, engine):
        outcome = engine.trading.import_wallet("user-1", "definitely-not-a-key")
        assert not outcome.success
        assert outcome.error_type == "InvalidKeyFormat"

    def test_export_without_wallet(self, engine):
        assert engine.trading.export_wallet("nobody").error_type == "NoWallet"

    @pytest.mark.asyncio
    async def test_wallet_balance(self, engine):
        engine.fund("user-1", sol=2.5)
        outcome = await engine.trading.wallet_balance("user-1")
        assert outcome.data["sol"] == 2.5

    def test_update_settings_reports_errors(self, engine):
        outcome = engine.trading.update_settings("user-1", SnipeMode.PRIMARY, buy_amount=-1)
        assert not outcome.success
        assert outcome.error_type == "InvalidSettings"
        assert outcome.data["errors"] == ["buy_amount must be > 0"]

    def test_update_settings(self, engine):
        outcome = engine.trading.update_settings("user-1", SnipeMode.PRIMARY, stop_loss_percent=30)
        assert outcome.success
        assert engine.trading.get_settings("user-1", SnipeMode.PRIMARY).stop_loss_percent == 30
