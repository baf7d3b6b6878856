"""
Rate Limiting Service - Protect login, signup and generation endpoints from abuse
Uses Redis when REDIS_URL is configured, otherwise an in-process store
"""
import time
import logging
import threading
from functools import wraps
from typing import Optional, Tuple

import redis
from flask import current_app, request, jsonify, g

logger = logging.getLogger(__name__)

_memory_store = {}
_memory_lock = threading.RLock()
_redis_clients = {}


class RateLimiter:
    """Rate limiting with Redis backend and memory fallback"""

    LOGIN_LIMIT = 5
    LOGIN_WINDOW = 300
    SIGNUP_LIMIT = 10
    SIGNUP_WINDOW = 3600
    GENERATION_LIMIT = 30
    GENERATION_WINDOW = 60

    @classmethod
    def _get_redis_client(cls) -> Optional[redis.Redis]:
        url = current_app.config.get('REDIS_URL')
        if not url:
            return None
        client = _redis_clients.get(url)
        if client is None:
            client = redis.Redis.from_url(url, socket_timeout=2)
            _redis_clients[url] = client
        return client

    @classmethod
    def _get_key(cls, identifier: str, action: str) -> str:
        return f"rate_limit:{action}:{identifier}"

    @classmethod
    def _memory_incr(cls, key: str, window: int) -> Tuple[int, float]:
        with _memory_lock:
            now = time.time()
            if key in _memory_store:
                count, expiry = _memory_store[key]
                if now < expiry:
                    count += 1
                    _memory_store[key] = (count, expiry)
                    return count, expiry

            expiry = now + window
            _memory_store[key] = (1, expiry)
            return 1, expiry

    @classmethod
    def _memory_reset(cls, key: str):
        with _memory_lock:
            _memory_store.pop(key, None)

    @classmethod
    def clear_memory_store(cls):
        with _memory_lock:
            _memory_store.clear()

    @classmethod
    def check_rate_limit(cls, identifier: str, action: str, limit: int, window: int) -> Tuple[bool, int, int]:
        """
        Count one attempt and check it against the limit

        Returns:
            (allowed, remaining, reset_time)
        """
        key = cls._get_key(identifier, action)
        client = cls._get_redis_client()

        if client:
            try:
                pipe = client.pipeline()
                pipe.incr(key)
                pipe.ttl(key)
                current_count, ttl = pipe.execute()

                if ttl == -1:
                    client.expire(key, window)
                    ttl = window

                remaining = max(0, limit - current_count)
                reset_time = int(time.time()) + (ttl if ttl > 0 else window)
                return current_count <= limit, remaining, reset_time
            except redis.RedisError as e:
                logger.error(f"Redis rate limit error: {e}")

        current_count, expiry = cls._memory_incr(key, window)
        remaining = max(0, limit - current_count)
        return current_count <= limit, remaining, int(expiry)

    @classmethod
    def check_login_limit(cls, identifier: str) -> Tuple[bool, int, int]:
        """Check login rate limit (5 attempts per 5 minutes)"""
        return cls.check_rate_limit(identifier, 'login', cls.LOGIN_LIMIT, cls.LOGIN_WINDOW)

    @classmethod
    def reset_login_limit(cls, identifier: str):
        """Reset login rate limit after successful login"""
        key = cls._get_key(identifier, 'login')
        client = cls._get_redis_client()

        if client:
            try:
                client.delete(key)
                return
            except redis.RedisError as e:
                logger.error(f"Redis reset error: {e}")

        cls._memory_reset(key)


def rate_limit(limit: int = 100, window: int = 60, key_func=None):
    """
    Decorator to rate limit a route

    Args:
        limit: Maximum requests allowed
        window: Time window in seconds
        key_func: Optional function to generate rate limit key from request
    """
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            if key_func:
                identifier = key_func()
            else:
                from flask_login import current_user
                if current_user.is_authenticated:
                    identifier = f"user:{current_user.id}"
                else:
                    identifier = request.remote_addr or 'unknown'

            allowed, remaining, reset_time = RateLimiter.check_rate_limit(
                identifier, f.__name__, limit, window
            )
            g.rate_limit_remaining = remaining

            if not allowed:
                retry_after = max(0, reset_time - int(time.time()))
                response = jsonify({
                    'error': 'Rate limit exceeded',
                    'retry_after': retry_after
                })
                response.status_code = 429
                response.headers['Retry-After'] = str(retry_after)
                return response

            return f(*args, **kwargs)
        return wrapper
    return decorator
