from __future__ import annotations

import math

from bot.resilience.errors import (
    ApprovalDeniedError,
    BreakerOpenError,
    BreakerOpenedJustNowError,
    error_status,
)


class LLMError(Exception):
    """Base error for LLM-related failures."""


class LLMEmptyResponseError(LLMError):
    """The provider answered but produced no text; retried like a transient failure."""


class ModelConfigError(LLMError):
    """A model or provider referenced at runtime is missing from config.yaml."""


# kind -> (admin text, end-user text)
ERROR_TEXTS = {
    "rate_limited": (
        "⚠️ Rate Limited: API provider is temporarily rate-limited. Please retry shortly.",
        "目前模型流量較高，請稍後再試。",
    ),
    "auth": (
        "❌ Authentication Error: Invalid API key or credentials.",
        "目前無法連線到模型服務，請聯絡管理員檢查金鑰設定。",
    ),
    "not_found": (
        "❌ Not Found: The requested resource was not found.",
        "找不到指定的模型或資源。",
    ),
    "forbidden": (
        "❌ Forbidden: You don't have permission to access this resource.",
        "目前沒有權限使用這個模型或資源。",
    ),
    "connection": (
        "❌ Connection Error: Unable to connect to the API provider.",
        "連線模型服務失敗，可能是網路或伺服器問題。",
    ),
}
UNEXPECTED_USER_TEXT = "呼叫模型時發生未預期錯誤，已通知管理員。"


def is_breaker_error(error: BaseException) -> bool:
    return isinstance(error, (BreakerOpenError, BreakerOpenedJustNowError))


def classify_error(error: BaseException) -> str | None:
    """Coarse kind of an upstream failure, from its status code or, failing that, its text."""
    text, name, status = str(error), type(error).__name__, error_status(error)
    if status == 429 or "429" in text or name == "RateLimitError":
        return "rate_limited"
    if status == 401 or "401" in text or "Unauthorized" in text:
        return "auth"
    if status == 404 or "404" in text or name == "NotFound":
        return "not_found"
    if status == 403 or "403" in text or name == "Forbidden":
        return "forbidden"
    if "Connection" in name or "ECONNREFUSED" in text or "ETIMEDOUT" in text:
        return "connection"
    return None


def parse_error_message(error: BaseException) -> str:
    """Short admin-facing description, used in owner notifications and logs."""
    if isinstance(error, BreakerOpenError):
        return f"🔌 Circuit Open: upstream calls paused for {math.ceil(error.retry_after_ms / 1000)}s."
    if isinstance(error, BreakerOpenedJustNowError):
        return f"🔌 Circuit Tripped after {error.failure_count} failures: {parse_error_message(error.cause)}"
    if isinstance(error, ApprovalDeniedError):
        return f"🚫 Not Approved: request {error.request_id} was {error.reason}."

    kind = classify_error(error)
    if kind:
        return ERROR_TEXTS[kind][0]
    first_line = str(error).split("\n")[0][:100]
    return f"❌ {type(error).__name__}: {first_line}"


def format_user_friendly_error(error: BaseException) -> str:
    if is_breaker_error(error):
        return "模型服務暫時不穩定，已暫停呼叫並通知管理員，請稍後再試。"
    if isinstance(error, ApprovalDeniedError):
        return "這個操作未獲管理員核准。"
    kind = classify_error(error)
    return ERROR_TEXTS[kind][1] if kind else UNEXPECTED_USER_TEXT
