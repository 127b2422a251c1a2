"""Error taxonomy shared by the core services and the HTTP layer."""


class WhisperPayError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(WhisperPayError):
    """Bad address, amount or missing field. Raised before any network call."""


class InvalidAddress(ValidationError):
    pass


class ConfigurationError(WhisperPayError):
    """Missing RPC URL, key or required contract address."""


class UnsupportedChainError(WhisperPayError):
    def __init__(self, chain_id: int):
        super().__init__(f"Parent chain not supported: {chain_id}")
        self.chain_id = chain_id


class FeeQuoteUnavailable(WhisperPayError):
    """Neither a base fee nor a gas price could be read from the parent chain."""


class SubmissionError(WhisperPayError):
    """A network or contract call failed. Carries the underlying message verbatim."""


class ProvisioningError(SubmissionError):
    pass
