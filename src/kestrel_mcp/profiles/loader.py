"""Coding profile discovery."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import CodingProfile

logger = logging.getLogger(__name__)

PROFILE_SUFFIXES = (".yml", ".yaml")


class ProfileLoadError(RuntimeError):
    """Raised when a profile file is unreadable or a profile id is unknown."""


class ProfileLoader:
    """Reads ``*.yml``/``*.yaml`` coding profiles from a list of directories.

    Directories that do not exist are ignored. When two files declare the
    same profile id the one found in the later directory wins, so a
    repository can override the bundled profiles.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in (search_paths or []) if Path(path).is_dir()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _profile_files(self) -> Iterator[Path]:
        for directory in self._search_paths:
            yield from sorted(
                entry for entry in directory.iterdir() if entry.is_file() and entry.suffix in PROFILE_SUFFIXES
            )

    @staticmethod
    def _read(path: Path) -> CodingProfile | None:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ProfileLoadError(f"{path}: invalid YAML ({exc})") from exc
        if document is None:
            return None
        try:
            return CodingProfile.model_validate(document)
        except ValidationError as exc:
            raise ProfileLoadError(f"{path}: {exc}") from exc

    def load_all(self) -> dict[str, CodingProfile]:
        """Return every profile keyed by id; all file errors are reported together."""

        profiles: dict[str, CodingProfile] = {}
        problems: list[str] = []
        for path in self._profile_files():
            try:
                profile = self._read(path)
            except ProfileLoadError as exc:
                problems.append(str(exc))
                continue
            if profile is None:
                continue
            if profile.id in profiles:
                logger.debug("Profile overridden", extra={"profile_id": profile.id, "path": str(path)})
            profiles[profile.id] = profile

        if problems:
            raise ProfileLoadError("; ".join(problems))
        return profiles

    def get(self, profile_id: str) -> CodingProfile:
        profile = self.load_all().get(profile_id)
        if profile is None:
            searched = ", ".join(str(path) for path in self._search_paths) or "no search paths"
            raise ProfileLoadError(f"Coding profile '{profile_id}' not found ({searched})")
        return profile

    def resolve(self, profile_id: str, fallback: CodingProfile) -> tuple[CodingProfile, str | None]:
        """Return the requested profile, or ``fallback`` and the reason it was used."""

        try:
            return self.get(profile_id), None
        except ProfileLoadError as exc:
            logger.warning(
                "Falling back to the built-in profile",
                extra={"profile_id": profile_id, "fallback_id": fallback.id, "reason": str(exc)},
            )
            return fallback, str(exc)


__all__ = ["CodingProfile", "PROFILE_SUFFIXES", "ProfileLoadError", "ProfileLoader"]
