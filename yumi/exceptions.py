"""Custom exception hierarchy for yumi.

Provides precise error classification for the dispatch pipeline so each
stage can decide whether a failure aborts the current event, degrades
to a fallback, or becomes a user-facing notice.

Taxonomy (by how the dispatcher treats it):
    abort event:    TransportUnavailable
    degrade:        MetadataFetchFailed
    silent drop:    NormalizationFailed
    user notice:    UseDenied, PermissionDenied, CooldownActive,
                    CommandNotFound
    caught + logged at the dispatch boundary:
                    HandlerExecutionFailed, ContinuationCallbackFailed
    reported to the caller of a registry mutation:
                    DuplicateNameConflict, InvalidDescriptor,
                    PluginLoadError
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (timeout, bridge hiccup)
    PERMANENT = "permanent"          # Not worth retrying (bad input, denied)
    INFRASTRUCTURE = "infrastructure"  # Bridge down, env issues


class YumiError(Exception):
    """Base exception for all yumi errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "dispatcher").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Transport exceptions
# ---------------------------------------------------------------------------

class TransportUnavailable(YumiError):
    """The bridge connection is not active or a call to it failed."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "transport", **context
        )


class MetadataFetchFailed(YumiError):
    """Group metadata could not be fetched. Callers degrade to a fallback.

    Attributes:
        chat_id: The group whose metadata was requested.
    """

    def __init__(
        self,
        message: str = "",
        *,
        chat_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.chat_id = chat_id
        super().__init__(
            message, category=category, module=module or "transport", **context
        )


class NormalizationFailed(YumiError):
    """A raw event could not be turned into a NormalizedMessage."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "normalizer", **context
        )


# ---------------------------------------------------------------------------
# User-facing rejections
# ---------------------------------------------------------------------------

class DispatchRejection(YumiError):
    """A command or follow-up was refused. Carries the notice for the user.

    Attributes:
        command: Name of the command involved (if any).
        notice: Text sent back to the chat.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[str] = None,
        notice: str = "",
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        self.notice = notice or message
        super().__init__(
            message, category=category, module=module or "dispatcher", **context
        )


class UseDenied(DispatchRejection):
    """Admin-only or whitelist mode refused the sender."""


class PermissionDenied(DispatchRejection):
    """Sender's tier is below the required tier.

    Attributes:
        required: Required permission tier.
    """

    def __init__(self, message: str = "", *, required: int = 0, **kwargs: Any) -> None:
        self.required = required
        super().__init__(message, **kwargs)


class CooldownActive(DispatchRejection):
    """Sender used the command again inside its cooldown window.

    Attributes:
        remaining: Seconds until the command is usable again.
    """

    def __init__(self, message: str = "", *, remaining: int = 0, **kwargs: Any) -> None:
        self.remaining = remaining
        super().__init__(message, **kwargs)


class CommandNotFound(DispatchRejection):
    """No command or alias matched the leading token."""


# ---------------------------------------------------------------------------
# Execution failures
# ---------------------------------------------------------------------------

class HandlerExecutionFailed(YumiError):
    """A command handler raised. Caught at the dispatch boundary.

    Attributes:
        command: Name of the command that failed.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        super().__init__(
            message, category=category, module=module or "dispatcher", **context
        )


class ContinuationCallbackFailed(YumiError):
    """A reply/reaction continuation callback raised.

    Attributes:
        target_message_id: Message the continuation was bound to.
        kind: "reply" or "reaction".
    """

    def __init__(
        self,
        message: str = "",
        *,
        target_message_id: Optional[str] = None,
        kind: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.target_message_id = target_message_id
        self.kind = kind
        super().__init__(
            message, category=category, module=module or "continuations", **context
        )


# ---------------------------------------------------------------------------
# Registry mutation errors
# ---------------------------------------------------------------------------

class RegistryError(YumiError):
    """A registry mutation was refused. The registry is left unchanged."""

    def __init__(
        self,
        message: str = "",
        *,
        name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.name = name
        super().__init__(
            message, category=category, module=module or "commands", **context
        )


class DuplicateNameConflict(RegistryError):
    """Name already registered and the caller asked not to overwrite."""


class InvalidDescriptor(RegistryError):
    """Descriptor is malformed (missing name, handler, bad tier...)."""


class PluginLoadError(RegistryError):
    """A plugin module could not be imported or installed."""

    def __init__(self, message: str = "", *, module: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, module=module or "plugins", **kwargs)
