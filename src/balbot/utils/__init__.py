"""Shared helpers."""

from balbot.utils.retry import BackoffPolicy, PollOutcome, poll_until, retry_async

__all__ = ["BackoffPolicy", "PollOutcome", "poll_until", "retry_async"]
