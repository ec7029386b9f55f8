"""
Submission and confirmation with bounded exponential backoff.

Each attempt moves PENDING -> SUBMITTED -> CONFIRMED | TIMED_OUT | REJECTED.
Timeouts and funding problems are retried; any other rejection ends the loop
immediately. Before every retry the signatures produced so far are checked
again, so a transaction that landed late is reported instead of being sent a
second time.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ledger_client import CONFIRMED_STATUSES
from orchestrator_errors import (
    InsufficientFunds,
    LedgerRpcError,
    LedgerTransportError,
    Rejected,
    RetryExhausted,
    TimedOut,
    UnknownOutcome,
)

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    PENDING = 'pending'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    TIMED_OUT = 'timed_out'
    REJECTED = 'rejected'


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    confirm_timeout: float = 60.0
    poll_interval: float = 2.0

    @classmethod
    def from_config(cls, config):
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            confirm_timeout=config.confirm_timeout,
            poll_interval=config.poll_interval,
        )

    def delay_for(self, attempt):
        """Delay before ``attempt`` (1-based): 0, base, 2*base, 4*base ... capped."""
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * 2 ** (attempt - 2), self.max_delay)

    @property
    def polls(self):
        return max(1, math.ceil(self.confirm_timeout / self.poll_interval)) if self.poll_interval > 0 else 1


@dataclass
class AttemptRecord:
    index: int
    delay: float
    state: SubmissionState = SubmissionState.PENDING
    signature: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self):
        return {
            'index': self.index,
            'delay': self.delay,
            'state': self.state.value,
            'signature': self.signature,
            'error': self.error,
        }


@dataclass
class SubmissionResult:
    success: bool
    signature: Optional[str] = None
    error_kind: Optional[str] = None
    message: str = ''
    attempts: int = 0
    attempt_log: List[AttemptRecord] = field(default_factory=list)
    outcome_known: bool = True
    signatures: List[str] = field(default_factory=list)

    @classmethod
    def confirmed(cls, signature, attempt_log, signatures=None, message='Transaction confirmed'):
        return cls(True, signature, None, message, len(attempt_log), list(attempt_log), True, list(signatures or [signature]))

    @classmethod
    def failed(cls, error, attempt_log=(), signatures=()):
        return cls(
            False,
            signatures[-1] if signatures else None,
            error.kind,
            error.message,
            len(attempt_log),
            list(attempt_log),
            not isinstance(error, UnknownOutcome),
            list(signatures),
        )

    def to_dict(self):
        return {
            'success': self.success,
            'signature': self.signature,
            'error_kind': self.error_kind,
            'message': self.message,
            'attempts': self.attempts,
            'attempt_log': [record.to_dict() for record in self.attempt_log],
            'outcome_known': self.outcome_known,
            'signatures': self.signatures,
        }


def _classify_rpc_error(error):
    """Map a node error to the exception the retry loop acts on."""
    if error.is_insufficient_funds:
        return InsufficientFunds(error.message)
    if error.is_blockhash_not_found:
        return TimedOut(f"Blockhash expired: {error.message}")
    return Rejected(error.message)


def _classify_ledger_error(err):
    text = str(err)
    if 'InsufficientFunds' in text or 'insufficient' in text.lower():
        return InsufficientFunds(f"Transaction failed on ledger: {err}")
    return Rejected(f"Transaction failed on ledger: {err}")


class SubmissionRetrier:
    def __init__(self, ledger, policy=None, sleep=None, on_attempt=None):
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self.on_attempt = on_attempt
        self.unknown_outcomes = {}
        self._confirmed = {}

    def _observe(self, record):
        logger.info(
            f"Attempt {record.index}/{self.policy.max_attempts} after {record.delay:.2f}s delay: "
            f"{record.state.value}" + (f" ({record.signature})" if record.signature else "")
            + (f" - {record.error}" if record.error else "")
        )
        if self.on_attempt is not None:
            self.on_attempt(record)

    async def _await_confirmation(self, signature):
        """Poll until confirmed, failed on the ledger, or the confirmation timeout passes."""
        for poll in range(self.policy.polls):
            status = await self.ledger.get_signature_status(signature)
            if status is not None:
                if status.get('err'):
                    return SubmissionState.REJECTED, status['err']
                if status.get('confirmationStatus') in CONFIRMED_STATUSES:
                    return SubmissionState.CONFIRMED, None
            if poll < self.policy.polls - 1:
                await self._sleep(self.policy.poll_interval)
        return SubmissionState.TIMED_OUT, None

    async def _find_confirmed(self, signatures):
        for signature in signatures:
            try:
                status = await self.ledger.confirm(signature)
            except (LedgerRpcError, LedgerTransportError) as e:
                logger.warning(f"Could not re-check {signature} before retrying: {e}")
                continue
            if status in CONFIRMED_STATUSES:
                return signature
        return None

    async def _run(self, label, send, verify=None, refresh=None, pending_signature=None, previous=()):
        """
        Drive the retry state machine.

        ``send`` returns the signature of a fresh submission; ``verify`` runs
        after confirmation and may raise InsufficientFunds to request a retry;
        ``refresh`` is awaited before every resubmission; ``pending_signature``
        returns the signature ``send`` is about to produce, when known upfront;
        ``previous`` are signatures to check for confirmation before the first send.
        """
        attempt_log = []
        signatures = list(previous)
        sent = []
        in_flight = None
        last_error = None
        try:
            for attempt in range(1, self.policy.max_attempts + 1):
                record = AttemptRecord(index=attempt, delay=self.policy.delay_for(attempt))
                attempt_log.append(record)
                if record.delay:
                    await self._sleep(record.delay)

                already = await self._find_confirmed(signatures)
                if already is not None:
                    record.signature = already
                    try:
                        if verify is not None:
                            await verify()
                    except InsufficientFunds as e:
                        last_error = e
                        record.state = SubmissionState.TIMED_OUT
                        record.error = e.message
                        self._observe(record)
                        continue
                    record.state = SubmissionState.CONFIRMED
                    record.error = 'confirmed earlier, not resubmitted'
                    self._observe(record)
                    return SubmissionResult.confirmed(already, attempt_log, signatures)

                if attempt > 1 and refresh is not None:
                    await refresh()

                # Known before the send so a cancellation mid-request is still traceable
                in_flight = pending_signature() if pending_signature is not None else None
                try:
                    signature = await send()
                except LedgerTransportError as e:
                    in_flight = None
                    last_error = TimedOut(str(e))
                    record.state = SubmissionState.TIMED_OUT
                    record.error = last_error.message
                    self._observe(record)
                    continue
                except LedgerRpcError as e:
                    in_flight = None
                    if e.is_already_processed:
                        # Same signature landed before; the re-check on the
                        # next attempt picks it up
                        if pending_signature is not None and pending_signature() not in signatures:
                            signatures.append(pending_signature())
                            sent.append(pending_signature())
                        last_error = TimedOut(e.message)
                        record.state = SubmissionState.TIMED_OUT
                        record.error = e.message
                        self._observe(record)
                        continue
                    last_error = _classify_rpc_error(e)
                    record.state = SubmissionState.REJECTED
                    record.error = last_error.message
                    self._observe(record)
                    if last_error.retryable:
                        continue
                    return SubmissionResult.failed(last_error, attempt_log, signatures)

                in_flight = None
                signature = str(signature)
                if signature not in signatures:
                    signatures.append(signature)
                sent.append(signature)
                record.state = SubmissionState.SUBMITTED
                record.signature = signature
                logger.info(f"{label}: submitted {signature}, waiting for confirmation")

                try:
                    state, ledger_error = await self._await_confirmation(signature)
                except (LedgerRpcError, LedgerTransportError) as e:
                    state, ledger_error = SubmissionState.TIMED_OUT, None
                    last_error = TimedOut(str(e))

                record.state = state
                if state == SubmissionState.CONFIRMED:
                    if verify is not None:
                        try:
                            await verify()
                        except InsufficientFunds as e:
                            last_error = e
                            record.state = SubmissionState.TIMED_OUT
                            record.error = e.message
                            self._observe(record)
                            continue
                    self._observe(record)
                    return SubmissionResult.confirmed(signature, attempt_log, signatures)

                if state == SubmissionState.REJECTED:
                    last_error = _classify_ledger_error(ledger_error)
                    record.error = last_error.message
                    self._observe(record)
                    if last_error.retryable:
                        continue
                    return SubmissionResult.failed(last_error, attempt_log, signatures)

                last_error = TimedOut(f"{signature} not confirmed within {self.policy.confirm_timeout}s")
                record.error = last_error.message
                self._observe(record)
        except asyncio.CancelledError:
            if in_flight is not None and in_flight not in sent:
                sent.append(in_flight)
            if sent:
                outcome = UnknownOutcome(sent[-1])
                for signature in sent:
                    self.unknown_outcomes[signature] = SubmissionResult.failed(outcome, attempt_log, sent)
                logger.warning(f"{label}: cancelled after submitting {sent[-1]}; outcome unknown")
            raise

        exhausted = RetryExhausted(len(attempt_log), last_error.kind if last_error else None)
        logger.error(f"{label}: {exhausted.message}")
        return SubmissionResult.failed(exhausted, attempt_log, signatures)

    async def submit(self, planned, refresh=None):
        """
        Submit one planned transaction and wait for confirmation.

        ``refresh`` (optional coroutine function) is awaited before each
        resubmission, typically to re-sign against a new blockhash.
        """
        async def send():
            return await self.ledger.send_transaction(planned.serialize())

        async def refresh_planned():
            await refresh(planned)

        cached = self._confirmed.get(planned.signature)
        if cached is not None:
            logger.info(f"{planned.signature} already confirmed, not resubmitting")
            return cached

        label = f"stage {planned.stage} {planned.labels}"
        result = await self._run(
            label,
            send,
            refresh=refresh_planned if refresh is not None else None,
            pending_signature=lambda: planned.signature,
            previous=[planned.signature],
        )
        if result.success:
            for signature in result.signatures:
                self._confirmed[signature] = result
        return result

    async def request_funding(self, address, lamports):
        """Request a faucet airdrop and wait until the balance is visible."""
        async def send():
            return await self.ledger.request_airdrop(address, lamports)

        async def verify():
            balance = await self.ledger.get_balance(address)
            if balance <= 0:
                raise InsufficientFunds(f"Airdrop confirmed but balance of {address} is not visible yet")
            logger.info(f"Airdrop successful. New balance: {balance} lamports")

        return await self._run(f"airdrop to {address}", send, verify=verify)

    async def check_outcome(self, signature):
        """Re-query a signature whose outcome was left unknown by a cancellation."""
        status = await self.ledger.get_signature_status(signature)
        if status is None:
            return self.unknown_outcomes.get(signature) or SubmissionResult.failed(UnknownOutcome(signature), signatures=[signature])
        self.unknown_outcomes.pop(signature, None)
        if status.get('err'):
            return SubmissionResult.failed(Rejected(str(status['err'])), signatures=[signature])
        if status.get('confirmationStatus') in CONFIRMED_STATUSES:
            return SubmissionResult.confirmed(signature, [])
        return SubmissionResult.failed(UnknownOutcome(signature), signatures=[signature])
