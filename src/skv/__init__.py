from ._version import __version__
from .errors import (
    DriftError,
    HashCancelledError,
    HashTimeoutError,
    IntegrityError,
    MissingSkillFileError,
    ProviderError,
    ProviderTimeoutError,
    SkvError,
    TagMovedError,
    TimedOutError,
    UsageError,
    ValidationError,
)
from .git import Checkout, GitSourceProvider, SourceProvider
from .lockfile import License, LockEntry
from .manifest import Manifest, SkillEntry
from .output import Output
from .project import SkillVendor
from .reconcile import Policy, Reconciler

__all__ = [
    "__version__",
    "Checkout",
    "DriftError",
    "GitSourceProvider",
    "HashCancelledError",
    "HashTimeoutError",
    "IntegrityError",
    "License",
    "LockEntry",
    "Manifest",
    "MissingSkillFileError",
    "Output",
    "Policy",
    "ProviderError",
    "ProviderTimeoutError",
    "Reconciler",
    "SkillEntry",
    "SkillVendor",
    "SkvError",
    "SourceProvider",
    "TagMovedError",
    "TimedOutError",
    "UsageError",
    "ValidationError",
]
