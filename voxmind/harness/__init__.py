"""Agent harness: retries and the tool-call loop that drives the model."""
from voxmind.harness.retry import RetryConfig, is_retryable_error, with_retries

__all__ = ["RetryConfig", "is_retryable_error", "with_retries"]
