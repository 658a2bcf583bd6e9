from .token_bucket import TokenBucketRateLimiter

__all__ = ["TokenBucketRateLimiter"]
