"""Credential store loading service secrets from a dotenv-style file.

The credential file is read exactly once when the store is built. Every
component receives values through the store instead of the process
environment, so a service never starts against an absent credential.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from dotenv import dotenv_values

from nodestack.domain import Credential, DefaultCredentialError, MissingCredentialsError

logger = logging.getLogger(__name__)

SENSITIVE_KEY_MARKERS = ("PASSWORD", "PASS", "SECRET", "TOKEN", "KEY")


@dataclass(frozen=True)
class CredentialValidationResult:
    """Outcome of validating a set of required credential keys.

    Attributes:
        status: `ok` when every key is present, otherwise `missing`.
        missing_keys: Sorted keys that are absent or blank.
        placeholder_keys: Sorted sensitive keys holding known placeholder values.
    """

    status: str
    missing_keys: tuple[str, ...]
    placeholder_keys: tuple[str, ...]

    def credential_is_valid(self) -> bool:
        """Return whether every required key is present."""

        return self.status == "ok"


class CredentialStore:
    """In-memory credential values loaded once from the configuration source."""

    def __init__(
        self,
        values: Mapping[str, str | None],
        placeholder_values: Iterable[str] = (),
        enforce_non_default: bool = False,
        source_label: str = "<memory>",
    ):
        """Initialize credential store.

        Args:
            values: Raw key/value pairs. `None` values are treated as blank.
            placeholder_values: Values treated as unmodified example credentials.
            enforce_non_default: Whether placeholder values block startup.
            source_label: Source description used in diagnostics.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when a credential key is blank.
        """

        normalized_values: dict[str, str] = {}
        for key, value in values.items():
            normalized_key = str(key).strip()
            if not normalized_key:
                raise ValueError("credential keys must not be blank")
            normalized_values[normalized_key] = "" if value is None else str(value).strip()

        self._values = normalized_values
        self._placeholder_values = frozenset(value.strip().lower() for value in placeholder_values)
        self._enforce_non_default = enforce_non_default
        self._source_label = source_label

    @classmethod
    def credential_load_file(
        cls,
        path: str | Path,
        placeholder_values: Iterable[str] = (),
        enforce_non_default: bool = False,
    ) -> CredentialStore:
        """Read a dotenv-style credential file once and build the store.

        A missing file yields an empty store so validation reports every
        required key instead of failing on the file itself.

        Args:
            path: Credential file path.
            placeholder_values: Values treated as unmodified example credentials.
            enforce_non_default: Whether placeholder values block startup.

        Returns:
            CredentialStore: Store holding the file contents.

        Raises:
            ValueError: Raised when the file contains a blank key.
        """

        credential_path = Path(path)
        if credential_path.is_file():
            raw_values = dotenv_values(credential_path)
        else:
            logger.warning("Credential file %s does not exist", credential_path)
            raw_values = {}
        return cls(
            values=raw_values,
            placeholder_values=placeholder_values,
            enforce_non_default=enforce_non_default,
            source_label=str(credential_path),
        )

    @property
    def source_label(self) -> str:
        return self._source_label

    def credential_validate(self, required_keys: Iterable[str]) -> CredentialValidationResult:
        """Validate presence of required keys and detect placeholder values.

        Args:
            required_keys: Keys that must be present and non-blank.

        Returns:
            CredentialValidationResult: Status with enumerated missing keys.

        Raises:
            RuntimeError: This method does not raise runtime errors.
        """

        required = sorted({key.strip() for key in required_keys if key.strip()})
        missing_keys = tuple(key for key in required if not self._values.get(key))
        placeholder_keys = tuple(
            key
            for key in sorted(self._values)
            if self.credential_is_sensitive(key) and self._values[key].lower() in self._placeholder_values
        )
        return CredentialValidationResult(
            status="missing" if missing_keys else "ok",
            missing_keys=missing_keys,
            placeholder_keys=placeholder_keys,
        )

    def credential_require(self, required_keys: Iterable[str]) -> CredentialValidationResult:
        """Validate required keys and raise on fatal findings.

        Placeholder values are logged as security warnings and only raise
        when enforcement is enabled.

        Args:
            required_keys: Keys that must be present and non-blank.

        Returns:
            CredentialValidationResult: Successful validation result.

        Raises:
            MissingCredentialsError: Raised when required keys are missing.
            DefaultCredentialError: Raised when enforcement is on and placeholders are found.
        """

        result = self.credential_validate(required_keys)
        if not result.credential_is_valid():
            raise MissingCredentialsError(result.missing_keys)
        if result.placeholder_keys:
            if self._enforce_non_default:
                raise DefaultCredentialError(result.placeholder_keys)
            logger.warning(
                "Security warning: credentials in %s still use placeholder values: %s",
                self._source_label,
                ", ".join(result.placeholder_keys),
            )
        return result

    def credential_get(self, key: str, required: bool = False) -> Credential | None:
        """Return one credential, or None when absent."""

        if key not in self._values:
            return None
        return Credential(
            key=key,
            value=self._values[key],
            required=required,
            sensitive=self.credential_is_sensitive(key),
        )

    def credential_values(self) -> dict[str, str]:
        """Return a copy of every non-blank credential value."""

        return {key: value for key, value in self._values.items() if value}

    @staticmethod
    def credential_is_sensitive(key: str) -> bool:
        """Return whether a key name denotes password-like material."""

        upper_key = key.upper()
        return any(marker in upper_key for marker in SENSITIVE_KEY_MARKERS)
