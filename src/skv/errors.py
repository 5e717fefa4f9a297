from __future__ import annotations


class SkvError(RuntimeError):
    def __init__(self, message: str, *, skill: str | None = None, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.skill = skill
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}; {self.hint}"
        return self.message


class UsageError(SkvError):
    pass


class ValidationError(SkvError):
    pass


class MissingSkillFileError(ValidationError):
    pass


class DriftError(SkvError):
    def __init__(
        self,
        message: str,
        *,
        skill: str | None = None,
        hint: str | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> None:
        super().__init__(message, skill=skill, hint=hint)
        self.expected = expected
        self.actual = actual


class TagMovedError(DriftError):
    pass


class ProviderError(SkvError):
    pass


class TimedOutError(SkvError):
    pass


class ProviderTimeoutError(ProviderError, TimedOutError):
    pass


class HashTimeoutError(TimedOutError):
    pass


class HashCancelledError(SkvError):
    pass


class IntegrityError(SkvError):
    pass
