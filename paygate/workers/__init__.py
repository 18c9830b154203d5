from paygate.workers.retry_queue import RetryQueue, backoff_delay

__all__ = ["RetryQueue", "backoff_delay"]
