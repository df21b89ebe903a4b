"""
Tests for the network collaborators

Tests core functionality:
1. PumpPortal quote requests and circuit breaking
2. Jito bundle submission
3. DexScreener price selection
4. Wallet balance reads
"""

import random
from types import SimpleNamespace

import aiohttp
import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from apex_sniper.core.jito_client import JitoClient
from apex_sniper.core.models import TradeSide
from apex_sniper.core.price_feed import DexScreenerPriceFeed
from apex_sniper.core.quote_client import PumpPortalClient
from apex_sniper.core.wallet import WalletReader
from apex_sniper.exceptions import QuoteUnavailable, RpcUnavailable
from apex_sniper.utils.retry import CircuitBreaker


class FakeResponse:
    def __init__(self, status=200, body=b"", json_data=None):
        self.status = status
        self.body = body
        self.json_data = json_data

    async def text(self):
        return self.body.decode(errors="replace")

    async def read(self):
        return self.body

    async def json(self, content_type=None):
        return self.json_data

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class TestPumpPortalClient:
    @pytest.mark.asyncio
    async def test_buy_request(self):
        session = FakeSession(FakeResponse(body=b"\x01tx"))
        client = PumpPortalClient(session, api_url="https://quotes.test/trade")

        tx = await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.BUY, 0.1, 20, 0.0001)

        assert tx == b"\x01tx"
        url, payload = session.requests[0]
        assert url == "https://quotes.test/trade"
        assert payload["action"] == "buy"
        assert payload["denominatedInSol"] == "true"
        assert payload["amount"] == 0.1
        assert payload["slippage"] == 20

    @pytest.mark.asyncio
    async def test_sell_in_tokens_with_minimum_priority_fee(self):
        session = FakeSession(FakeResponse(body=b"\x01tx"))
        client = PumpPortalClient(session)

        await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.SELL, 500.0, 20, 0)

        payload = session.requests[0][1]
        assert payload["denominatedInSol"] == "false"
        assert payload["priorityFee"] == 0.0001

    @pytest.mark.asyncio
    async def test_error_status(self):
        client = PumpPortalClient(FakeSession(FakeResponse(status=400, body=b"bad mint")))
        with pytest.raises(QuoteUnavailable):
            await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.BUY, 0.1, 20, 0.0001)

    @pytest.mark.asyncio
    async def test_empty_body(self):
        client = PumpPortalClient(FakeSession(FakeResponse(body=b"")))
        with pytest.raises(QuoteUnavailable):
            await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.BUY, 0.1, 20, 0.0001)

    @pytest.mark.asyncio
    async def test_network_error(self):
        client = PumpPortalClient(FakeSession(aiohttp.ClientConnectionError("reset")))
        with pytest.raises(QuoteUnavailable):
            await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.BUY, 0.1, 20, 0.0001)

    @pytest.mark.asyncio
    async def test_open_circuit_skips_request(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60, name="test")
        session = FakeSession(FakeResponse(status=503), FakeResponse(status=503), FakeResponse(body=b"tx"))
        client = PumpPortalClient(session, circuit_breaker=breaker)

        for _ in range(3):
            with pytest.raises(QuoteUnavailable):
                await client.get_swap_transaction("Wallet1", "Mint1", TradeSide.BUY, 0.1, 20, 0.0001)

        assert len(session.requests) == 2
        assert breaker.state == "OPEN"


class TestJitoClient:
    def signed_tx(self):
        payer = Keypair()
        return payer, JitoClient(None).build_tip_transaction(payer, 5_000, Hash.new_unique())

    @pytest.mark.asyncio
    async def test_accepted_bundle(self):
        session = FakeSession(FakeResponse(json_data={"jsonrpc": "2.0", "result": "bundle-abc", "id": 1}))
        client = JitoClient(session, engines=["https://engine.test"])
        payer, tx = self.signed_tx()

        result = await client.send_bundle([tx])

        assert result.is_success
        assert result.bundle_id == "bundle-abc"
        url, payload = session.requests[0]
        assert url == "https://engine.test/api/v1/bundles"
        assert payload["method"] == "sendBundle"
        assert payload["params"][1] == {"encoding": "base64"}

    @pytest.mark.asyncio
    async def test_rejected_bundle(self):
        session = FakeSession(FakeResponse(json_data={"error": {"code": -32602, "message": "bundle too old"}}))
        client = JitoClient(session)
        _, tx = self.signed_tx()

        result = await client.send_bundle([tx])

        assert not result.is_success
        assert result.error == "bundle too old"

    @pytest.mark.asyncio
    async def test_network_error_never_raises(self):
        client = JitoClient(FakeSession(aiohttp.ClientConnectionError("refused")))
        _, tx = self.signed_tx()

        result = await client.send_bundle([tx])

        assert result.status == "failed"

    def test_tip_goes_to_known_account(self):
        client = JitoClient(None, rng=random.Random(7))
        payer, tx = self.signed_tx()
        tip = client.build_tip_transaction(payer, 10, tx.message.recent_blockhash)
        accounts = tip.message.account_keys
        assert accounts[0] == payer.pubkey()
        assert any(a in client.tip_accounts for a in accounts)


class TestDexScreenerPriceFeed:
    def feed(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return DexScreenerPriceFeed("https://dex.test", client=client, retry_backoff=0)

    @pytest.mark.asyncio
    async def test_most_liquid_sol_pair(self):
        def handler(request):
            assert request.url.path == "/latest/dex/tokens/Mint1"
            return httpx.Response(200, json={"pairs": [
                {"quoteToken": {"symbol": "SOL"}, "priceNative": "0.00002", "liquidity": {"usd": 500}},
                {"quoteToken": {"symbol": "SOL"}, "priceNative": "0.00003", "liquidity": {"usd": 9000}},
                {"quoteToken": {"symbol": "USDC"}, "priceNative": "0.004", "liquidity": {"usd": 99000}},
            ]})

        feed = self.feed(handler)
        assert await feed.get_price("Mint1") == pytest.approx(0.00003)
        await feed.close()

    @pytest.mark.asyncio
    async def test_only_usdc_pairs_gives_none(self):
        def handler(request):
            return httpx.Response(200, json={"pairs": [
                {"quoteToken": {"symbol": "USDC"}, "priceNative": "0.0002", "liquidity": {"usd": 50000}},
            ]})

        feed = self.feed(handler)
        assert await feed.get_price("Mint1") is None
        await feed.close()

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        feed = self.feed(lambda request: httpx.Response(200, json={"pairs": None}))
        assert await feed.get_price("Mint1") is None
        await feed.close()

    @pytest.mark.asyncio
    async def test_server_error_gives_none(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        feed = self.feed(handler)
        assert await feed.get_price("Mint1") is None
        assert len(calls) == 3
        await feed.close()

    @pytest.mark.asyncio
    async def test_rate_limit_retried(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"pairs": [{"quoteToken": {"symbol": "WSOL"}, "priceNative": "0.5"}]}),
        ]
        feed = self.feed(lambda request: responses.pop(0))
        assert await feed.get_price("Mint1") == 0.5
        await feed.close()


class TestWalletReader:
    class Rpc:
        def __init__(self, lamports=None, accounts=None, fail=False):
            self.lamports = lamports
            self.accounts = accounts or []
            self.fail = fail

        async def get_balance(self, owner):
            if self.fail:
                raise ConnectionError("rpc down")
            return SimpleNamespace(value=self.lamports)

        async def get_token_accounts_by_owner_json_parsed(self, owner, opts):
            if self.fail:
                raise ConnectionError("rpc down")
            return SimpleNamespace(value=[
                SimpleNamespace(account=SimpleNamespace(data=SimpleNamespace(
                    parsed={"info": {"tokenAmount": {"uiAmountString": amount}}}
                )))
                for amount in self.accounts
            ])

    @pytest.mark.asyncio
    async def test_sol_balance(self):
        reader = WalletReader(self.Rpc(lamports=1_500_000_000))
        assert await reader.get_sol_balance(Pubkey.new_unique()) == 1.5

    @pytest.mark.asyncio
    async def test_sol_balance_unavailable(self):
        with pytest.raises(RpcUnavailable):
            await WalletReader(self.Rpc(fail=True)).get_sol_balance(Pubkey.new_unique())

    @pytest.mark.asyncio
    async def test_token_balance_sums_every_account(self):
        reader = WalletReader(self.Rpc(accounts=["100.5", "20"]))
        assert await reader.get_token_balance(Pubkey.new_unique(), str(Pubkey.new_unique())) == 120.5

    @pytest.mark.asyncio
    async def test_no_token_account_is_zero(self):
        reader = WalletReader(self.Rpc())
        assert await reader.get_token_balance(Pubkey.new_unique(), str(Pubkey.new_unique())) == 0.0

    @pytest.mark.asyncio
    async def test_token_balance_unreadable(self):
        reader = WalletReader(self.Rpc(fail=True))
        assert await reader.get_token_balance(Pubkey.new_unique(), str(Pubkey.new_unique())) is None
