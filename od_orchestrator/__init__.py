"""Practice-level orchestration: integration facade, file storage and CLI."""

from .runs import DailySync, RunHistory
from .service import (
    CredentialProvider,
    EnvironmentCredentialProvider,
    PracticeDirectory,
    PracticeIntegration,
    StaticPracticeDirectory,
)
from .storage import JsonFilePersistence, JsonPracticeDirectory

__all__ = [
    "CredentialProvider",
    "DailySync",
    "EnvironmentCredentialProvider",
    "JsonFilePersistence",
    "JsonPracticeDirectory",
    "PracticeDirectory",
    "PracticeIntegration",
    "RunHistory",
    "StaticPracticeDirectory",
]
