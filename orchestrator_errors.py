"""Error taxonomy shared by every stage of the orchestration pipeline."""


class OrchestratorError(Exception):
    """Base class; ``kind`` is the stable name reported to callers."""

    kind = "OrchestratorError"
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {'kind': self.kind, 'message': self.message}


class UnknownInstruction(OrchestratorError):
    kind = "UnknownInstruction"

    def __init__(self, name):
        super().__init__(f"Instruction {name} not found in catalog")
        self.name = name


class MalformedCatalog(OrchestratorError):
    kind = "MalformedCatalog"


class MalformedSecret(OrchestratorError):
    kind = "MalformedSecret"


class KeyConflict(OrchestratorError):
    kind = "KeyConflict"


class InvalidAddress(OrchestratorError):
    kind = "InvalidAddress"


class MalformedArguments(OrchestratorError):
    kind = "MalformedArguments"


class RentQueryUnavailable(OrchestratorError):
    kind = "RentQueryUnavailable"


class MissingSigner(OrchestratorError):
    kind = "MissingSigner"

    def __init__(self, missing, stage=None):
        missing = [str(address) for address in missing]
        where = f" in stage {stage}" if stage is not None else ""
        super().__init__(f"Missing signer(s){where}: {', '.join(missing)}")
        self.missing = missing
        self.stage = stage


class TransactionTooLarge(OrchestratorError):
    kind = "TransactionTooLarge"


class InsufficientFunds(OrchestratorError):
    kind = "InsufficientFunds"
    retryable = True


class TimedOut(OrchestratorError):
    kind = "TimedOut"
    retryable = True


class Rejected(OrchestratorError):
    kind = "Rejected"

    def __init__(self, reason):
        super().__init__(f"Transaction rejected: {reason}")
        self.reason = reason


class RetryExhausted(OrchestratorError):
    kind = "RetryExhausted"

    def __init__(self, attempts, last_error=None):
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"Gave up after {attempts} attempts{detail}")
        self.attempts = attempts
        self.last_error = last_error


class UnknownOutcome(OrchestratorError):
    kind = "UnknownOutcome"

    def __init__(self, signature):
        super().__init__(f"Outcome of {signature} is unknown; confirmation was not observed")
        self.signature = signature


class LedgerTransportError(Exception):
    """HTTP failure, connection failure or timeout talking to the RPC node."""


class LedgerRpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, code=None, message="Unknown error", data=None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data or {}

    @property
    def logs(self):
        if isinstance(self.data, dict):
            return self.data.get('logs') or []
        return []

    def _mentions(self, *needles):
        text = f"{self.message} {self.data}"
        return any(needle in text for needle in needles)

    @property
    def is_blockhash_not_found(self):
        return self._mentions('BlockhashNotFound', 'Blockhash not found')

    @property
    def is_insufficient_funds(self):
        return self._mentions(
            'InsufficientFunds',
            'insufficient funds',
            'insufficient lamports',
            'Attempt to debit an account but found no record of a prior credit',
        )

    @property
    def is_already_processed(self):
        return self._mentions('AlreadyProcessed', 'already been processed')
