"""
Transaction Confirmation Logic

Races a blocking confirmation wait against a fixed timeout, falls back to a
one-shot status poll, and maps program errors onto the failure taxonomy.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Iterable

from solana.rpc.async_api import AsyncClient
from solders.signature import Signature

from ..constants import (
    SLIPPAGE_ERROR_CODES,
    CURVE_CLOSED_ERROR_CODES,
    INSUFFICIENT_FUNDS_ERROR_CODES,
    SLIPPAGE_LOG_MARKERS,
    CURVE_CLOSED_LOG_MARKERS,
    INSUFFICIENT_FUNDS_LOG_MARKERS,
    TX_CONFIRMATION_TIMEOUT,
    STATUS_POLL_DELAY,
)
from ..exceptions import FailureKind

logger = logging.getLogger(__name__)

_CUSTOM_CODE_RE = re.compile(r"Custom\W{0,4}(\d+)")


def classify_failure(err: Any, logs: Optional[Iterable[str]] = None) -> FailureKind:
    """
    Map a transaction error (and optional program logs) to a FailureKind.

    Works on solders error objects, RPC JSON dicts and plain strings alike
    because it only looks at their text form.
    """
    text = str(err) if err is not None else ""

    match = _CUSTOM_CODE_RE.search(text)
    if match:
        code = int(match.group(1))
        if code in SLIPPAGE_ERROR_CODES:
            return FailureKind.SLIPPAGE
        if code in CURVE_CLOSED_ERROR_CODES:
            return FailureKind.CURVE_CLOSED
        if code in INSUFFICIENT_FUNDS_ERROR_CODES:
            return FailureKind.INSUFFICIENT_FUNDS

    haystack = (text + " " + " ".join(logs or [])).lower()
    squashed = haystack.replace(" ", "")
    for markers, kind in (
        (SLIPPAGE_LOG_MARKERS, FailureKind.SLIPPAGE),
        (CURVE_CLOSED_LOG_MARKERS, FailureKind.CURVE_CLOSED),
        (INSUFFICIENT_FUNDS_LOG_MARKERS, FailureKind.INSUFFICIENT_FUNDS),
    ):
        if any(m in haystack or m.replace(" ", "") in squashed for m in markers):
            return kind

    return FailureKind.UNKNOWN


class TxStatus(Enum):
    """Transaction status"""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    UNCERTAIN = "uncertain"


@dataclass
class TxResult:
    """Transaction confirmation result"""
    signature: str
    status: TxStatus
    slot: Optional[int] = None
    error: Optional[str] = None
    kind: Optional[FailureKind] = None
    elapsed_seconds: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.status == TxStatus.CONFIRMED

    @property
    def is_uncertain(self) -> bool:
        return self.status == TxStatus.UNCERTAIN


def _confirmation_level(raw) -> str:
    # solders enums print as "TransactionConfirmationStatus.Confirmed"
    return str(raw).split(".")[-1].lower() if raw is not None else ""


class TransactionConfirmer:
    """
    Confirmation with a bounded wait.

    Usage:
        confirmer = TransactionConfirmer(client)
        result = await confirmer.confirm(signature)

        if result.is_success:
            ...
        elif result.is_uncertain:
            # landed or not, nobody knows yet: verify by balances
            ...
    """

    MIN_POLL_INTERVAL = 0.5
    MAX_POLL_INTERVAL = 2.0

    def __init__(
        self,
        client: AsyncClient,
        timeout: float = TX_CONFIRMATION_TIMEOUT,
        status_poll_delay: float = STATUS_POLL_DELAY
    ):
        self.client = client
        self.timeout = timeout
        self.status_poll_delay = status_poll_delay

    async def confirm(self, signature: str) -> TxResult:
        """
        Wait for `signature` to reach confirmed commitment or fail.

        Returns:
            TxResult with CONFIRMED, FAILED (error + kind) or UNCERTAIN status
        """
        start_time = time.time()
        try:
            result = await asyncio.wait_for(self._wait_until_landed(signature), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"Confirmation of {signature[:20]}... timed out after {self.timeout}s, polling status once"
            )
            await asyncio.sleep(self.status_poll_delay)
            result = await self._status_once(signature)

        result.elapsed_seconds = time.time() - start_time
        if result.status == TxStatus.FAILED:
            logger.error(f"Transaction {signature[:20]}... failed: {result.error} ({result.kind.value})")
        elif result.status == TxStatus.CONFIRMED:
            logger.info(f"Transaction {signature[:20]}... confirmed in {result.elapsed_seconds:.1f}s")
        return result

    async def has_landed(self, signature: str) -> bool:
        """One delayed status read: True if the cluster knows `signature` at any commitment"""
        await asyncio.sleep(self.status_poll_delay)
        return await self._check_status(signature) is not None

    async def _wait_until_landed(self, signature: str) -> TxResult:
        poll_interval = self.MIN_POLL_INTERVAL
        while True:
            status = await self._check_status(signature)
            if status:
                result = self._result_from_status(signature, status)
                if result is not None:
                    return result
            await asyncio.sleep(poll_interval)
            poll_interval = min(poll_interval * 1.5, self.MAX_POLL_INTERVAL)

    async def _status_once(self, signature: str) -> TxResult:
        status = await self._check_status(signature)
        if status:
            result = self._result_from_status(signature, status)
            if result is not None:
                return result
        return TxResult(signature=signature, status=TxStatus.UNCERTAIN)

    @staticmethod
    def _result_from_status(signature: str, status: Dict[str, Any]) -> Optional[TxResult]:
        if status.get("err"):
            return TxResult(
                signature=signature,
                status=TxStatus.FAILED,
                slot=status.get("slot"),
                error=str(status["err"]),
                kind=classify_failure(status["err"]),
            )
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return TxResult(signature=signature, status=TxStatus.CONFIRMED, slot=status.get("slot"))
        return None

    async def _check_status(self, signature: str) -> Optional[Dict[str, Any]]:
        """Check transaction status from RPC"""
        try:
            sig = Signature.from_string(signature)
            response = await self.client.get_signature_statuses([sig], search_transaction_history=True)

            if response and response.value:
                status = response.value[0]
                if status:
                    return {
                        "slot": status.slot,
                        "err": status.err,
                        "confirmationStatus": _confirmation_level(status.confirmation_status),
                    }
            return None

        except Exception as e:
            logger.debug(f"Status check error: {e}")
            return None
