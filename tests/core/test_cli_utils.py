from unittest.mock import MagicMock

import click
import pytest

from triage_cli.core import config as app_config
from triage_cli.core.cli_utils import _error_code, _get_provider
from triage_cli.core_api.exceptions import RuleNotFoundError, TriageError
from triage_cli.core_api.provider import GmailProviderClient


def _ctx(**obj):
    return click.Context(click.Command("triage"), obj=obj)


def test_default_owner_wraps_preloaded_service():
    service = MagicMock()
    factory = MagicMock()
    ctx = _ctx(owner_id=app_config.DEFAULT_OWNER_ID, gmail_service=service, provider_factory=factory)

    provider = _get_provider(ctx)

    assert isinstance(provider, GmailProviderClient)
    assert provider.service is service
    factory.assert_not_called()


def test_default_owner_without_service_is_not_connected():
    assert _get_provider(_ctx(owner_id=app_config.DEFAULT_OWNER_ID)) is None


def test_other_owner_never_gets_the_default_service():
    default_service = MagicMock()
    alice_provider = MagicMock()
    factory = MagicMock(return_value=alice_provider)
    ctx = _ctx(owner_id="alice", gmail_service=default_service, provider_factory=factory)

    assert _get_provider(ctx) is alice_provider
    assert _get_provider(ctx) is alice_provider
    factory.assert_called_once_with("alice")


def test_other_owner_factory_error_means_not_connected():
    factory = MagicMock(side_effect=TriageError("Token file not found"))
    assert _get_provider(_ctx(owner_id="alice", provider_factory=factory)) is None


@pytest.mark.parametrize(
    "error, expected",
    [(RuleNotFoundError("x"), "RULE_NOT_FOUND_ERROR"), (TriageError("x"), "TRIAGE_ERROR")],
)
def test_error_code(error, expected):
    assert _error_code(error) == expected
