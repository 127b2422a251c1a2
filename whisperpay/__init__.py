"""WhisperPay: per-user rollup provisioning, bridging and dealer settlement."""

__version__ = "0.1.0"
