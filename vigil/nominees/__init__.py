"""Nominee lookup, the engine's view of the external nominee store."""

from .directory import Nominee, NomineeDirectory, SqliteNomineeDirectory
