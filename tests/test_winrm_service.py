"""Unit tests for helpers in the WinRM service."""

from contextlib import contextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pypsrp.complex_objects import PSInvocationState
from pypsrp.serializer import GenericComplexObject

from hvinventory.core.models import Credential
from hvinventory.services import winrm_service as winrm_module
from hvinventory.services.winrm_service import (
    WinRMService,
    WinRMTarget,
    _StreamCursor,
    pipeline_finished,
    ps_quote,
    render_psrp_item,
    wrap_script,
)


def _pipeline(output, errors=()):
    return SimpleNamespace(output=list(output), streams=SimpleNamespace(error=list(errors)))


def test_target_transport_depends_on_credential():
    assert WinRMTarget("hv01").transport == "kerberos"
    assert WinRMTarget("hv01").use_current_user is True

    explicit = WinRMTarget("10.0.0.5", credential=Credential.password("admin", "pw"))
    assert explicit.transport == "negotiate"
    assert explicit.use_current_user is False


def test_render_prefers_complex_object_properties():
    obj = GenericComplexObject()
    obj.to_string = "System.Management.ManagementBaseObject"
    obj.adapted_properties = {"Name": "vm-01", "State": "Running"}

    assert render_psrp_item(obj) == "Name: vm-01\nState: Running"


def test_render_plain_values():
    assert render_psrp_item(None) == ""
    assert render_psrp_item("text") == "text"
    assert render_psrp_item(42) == "42"


def test_cursor_splits_streams_and_reads_exit_sentinel():
    cursor = _StreamCursor(hostname="hv01")
    ps = _pipeline(["{\"Host\": {}}", "__HVINVENTORY_EXIT_CODE__:3"], ["Get-VHD : access denied"])

    cursor.drain(ps)
    cursor.drain(ps)

    assert cursor.stdout == ["{\"Host\": {}}\n"]
    assert cursor.stderr == ["Get-VHD : access denied\n"]
    assert cursor.exit_code == 3


def test_cursor_only_reads_new_records():
    cursor = _StreamCursor(hostname="hv01")
    ps = _pipeline(["first"])

    cursor.drain(ps)
    ps.output.append("second")
    cursor.drain(ps)

    assert cursor.stdout == ["first\n", "second\n"]


def test_cursor_ignores_malformed_sentinel():
    cursor = _StreamCursor(hostname="hv01")
    cursor.drain(_pipeline(["__HVINVENTORY_EXIT_CODE__:abc"]))

    assert cursor.exit_code is None
    assert cursor.stdout == []


def test_wrap_script_appends_exit_sentinel():
    script = wrap_script("Get-VM\nGet-VMHost")

    assert "        Get-VM\n        Get-VMHost" in script
    assert script.splitlines()[-1] == 'Write-Output "__HVINVENTORY_EXIT_CODE__:$InventoryExitCode"'


def test_ps_quote_escapes_single_quotes():
    assert ps_quote("O'Brien") == "'O''Brien'"


@pytest.mark.parametrize(
    "state, expected",
    [
        (PSInvocationState.COMPLETED, True),
        (PSInvocationState.FAILED, True),
        (PSInvocationState.RUNNING, False),
        ("Stopped", True),
        ("running", False),
    ],
)
def test_pipeline_finished(state, expected):
    assert pipeline_finished(state) is expected


def test_create_session_passes_per_call_credentials(monkeypatch):
    wsman = MagicMock()
    monkeypatch.setattr(winrm_module, "WSMan", wsman)

    WinRMService()._create_session(WinRMTarget("10.0.0.5", Credential.password("admin", "pw")))
    WinRMService()._create_session(WinRMTarget("hv01.corp.local"))

    explicit_kwargs = wsman.call_args_list[0].kwargs
    assert explicit_kwargs["username"] == "admin"
    assert explicit_kwargs["password"] == "pw"
    assert explicit_kwargs["auth"] == "negotiate"
    assert explicit_kwargs["ssl"] is False
    assert explicit_kwargs["port"] == 5985

    current_user_kwargs = wsman.call_args_list[1].kwargs
    assert current_user_kwargs["username"] is None
    assert current_user_kwargs["password"] is None
    assert current_user_kwargs["auth"] == "kerberos"


def test_session_releases_transport_when_pool_fails(monkeypatch):
    wsman = MagicMock()
    pool = MagicMock()
    pool.open.side_effect = winrm_module.AuthenticationError("bad credentials")
    monkeypatch.setattr(winrm_module, "WSMan", MagicMock(return_value=wsman))
    monkeypatch.setattr(winrm_module, "RunspacePool", MagicMock(return_value=pool))

    with pytest.raises(winrm_module.WinRMAuthenticationError):
        WinRMService().test_connection(WinRMTarget("hv01"))

    wsman.close.assert_called_once()
    pool.close.assert_not_called()


def test_execute_ps_command_collects_streams(monkeypatch):
    service = WinRMService()
    scripts = []

    @contextmanager
    def fake_session(target):
        yield object()

    def fake_invoke(pool, hostname, script, cursor):
        scripts.append(script)
        cursor.drain(_pipeline(["{}", "__HVINVENTORY_EXIT_CODE__:0"], ["warning text"]))
        return 0.1

    monkeypatch.setattr(service, "_session", fake_session)
    monkeypatch.setattr(service, "_invoke", fake_invoke)

    stdout, stderr, exit_code = service.execute_ps_command(WinRMTarget("hv01"), "Get-VM")

    assert stdout == "{}\n"
    assert stderr == "warning text\n"
    assert exit_code == 0
    assert "        Get-VM" in scripts[0]


def test_missing_sentinel_uses_error_stream(monkeypatch):
    service = WinRMService()

    @contextmanager
    def fake_session(target):
        yield object()

    def fake_invoke(pool, hostname, script, cursor):
        cursor.drain(_pipeline([], ["terminating error"]))
        return 0.1

    monkeypatch.setattr(service, "_session", fake_session)
    monkeypatch.setattr(service, "_invoke", fake_invoke)

    assert service.execute_ps_command(WinRMTarget("hv01"), "Get-VM")[2] == 1


def test_test_connection_opens_and_closes_a_session(monkeypatch):
    service = WinRMService()
    events = []

    @contextmanager
    def fake_session(target):
        events.append(("open", target.hostname))
        yield object()
        events.append(("close", target.hostname))

    monkeypatch.setattr(service, "_session", fake_session)

    duration = service.test_connection(WinRMTarget("hv01"))

    assert duration >= 0
    assert events == [("open", "hv01"), ("close", "hv01")]
