"""Tests for credential store loading and required-key validation."""

from __future__ import annotations

import pytest

from nodestack.config import CredentialStore
from nodestack.domain import DefaultCredentialError, MissingCredentialsError


def test_config_credential_require_enumerates_exactly_the_missing_key() -> None:
    """Raise with only the absent key when other required keys are present.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when the reported keys do not match expectations.
    """

    store = CredentialStore(values={"RPC_USER": "operator", "UNRELATED": "x"})

    with pytest.raises(MissingCredentialsError) as error_info:
        store.credential_require(["RPC_USER", "RPC_PASSWORD"])

    assert error_info.value.missing_keys == ("RPC_PASSWORD",)
    assert "RPC_PASSWORD" in str(error_info.value)
    assert "RPC_USER" not in str(error_info.value)


def test_config_credential_blank_value_counts_as_missing() -> None:
    """Treat blank and None values as absent credentials.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when blank values pass validation.
    """

    store = CredentialStore(values={"RPC_USER": "   ", "RPC_PASSWORD": None})

    result = store.credential_validate(["RPC_PASSWORD", "RPC_USER"])

    assert result.status == "missing"
    assert result.missing_keys == ("RPC_PASSWORD", "RPC_USER")
    assert store.credential_values() == {}


def test_config_credential_placeholder_warns_unless_enforced(caplog: pytest.LogCaptureFixture) -> None:
    """Log placeholder secrets by default and raise when enforcement is enabled.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when placeholder handling does not match policy.
    """

    values = {"RPC_USER": "operator", "RPC_PASSWORD": "changeme"}

    lenient_store = CredentialStore(values=values, placeholder_values=["changeme"])
    with caplog.at_level("WARNING"):
        result = lenient_store.credential_require(["RPC_USER", "RPC_PASSWORD"])
    assert result.credential_is_valid()
    assert result.placeholder_keys == ("RPC_PASSWORD",)
    assert "placeholder" in caplog.text

    strict_store = CredentialStore(values=values, placeholder_values=["changeme"], enforce_non_default=True)
    with pytest.raises(DefaultCredentialError) as error_info:
        strict_store.credential_require(["RPC_USER", "RPC_PASSWORD"])
    assert error_info.value.keys == ("RPC_PASSWORD",)


def test_config_credential_load_file_reads_dotenv_once(tmp_path) -> None:
    """Load dotenv-style files and tolerate a missing file as an empty store.

    Returns:
        None: Assertions validate behavior.

    Raises:
        AssertionError: Raised when loaded values do not match the file.
    """

    credential_path = tmp_path / "credentials.env"
    credential_path.write_text("# comment\nRPC_USER=operator\nRPC_PASSWORD='s3cr3t value'\n", encoding="utf-8")

    store = CredentialStore.credential_load_file(credential_path)

    assert store.credential_values() == {"RPC_USER": "operator", "RPC_PASSWORD": "s3cr3t value"}
    assert store.source_label == str(credential_path)
    password = store.credential_get("RPC_PASSWORD", required=True)
    assert password is not None and password.sensitive and password.required

    missing_store = CredentialStore.credential_load_file(tmp_path / "absent.env")
    with pytest.raises(MissingCredentialsError) as error_info:
        missing_store.credential_require(["RPC_PASSWORD"])
    assert error_info.value.missing_keys == ("RPC_PASSWORD",)
