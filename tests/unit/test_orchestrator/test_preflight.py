# SPDX-License-Identifier: LGPL-3.0-or-later
import sys
from unittest.mock import patch

import pytest

from fakes.fake_provider import FakeProvider
from ffubuild.config import BuildConfig
from ffubuild.core.utils import U
from ffubuild.orchestrator.preflight import ErrorKind, PreflightChecker


@pytest.fixture
def provider(logger, registry):
    return FakeProvider(logger, registry)


def _config(tmp_path, **kw):
    kw.setdefault("min_free_gb", 0)
    return BuildConfig(work_dir=tmp_path / "work", **kw)


def _kinds(report):
    return sorted({e.kind for e in report.errors})


@pytest.mark.unit
def test_all_clear(logger, provider, tmp_path):
    report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert report.ok()
    assert report.checks_ran == ["config", "backend", "tools", "disk", "permissions", "optional"]
    assert report.notes["disk_format"] == "vhdx"
    assert report.notes["permissions"] == "OK"
    assert (tmp_path / "work").is_dir()


@pytest.mark.unit
def test_backend_unavailable(logger, provider, tmp_path):
    provider.available = False
    provider.issues = ["vmms is Stopped", "not elevated"]
    report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert [e.message for e in report.errors] == ["vmms is Stopped", "not elevated"]
    assert _kinds(report) == [ErrorKind.BACKEND]


@pytest.mark.unit
def test_available_with_issues_warns(logger, provider, tmp_path):
    provider.issues = ["nested virtualization off"]
    report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert report.ok()
    assert "nested virtualization off" in report.warnings


@pytest.mark.unit
def test_vm_shape_against_capabilities(logger, provider, tmp_path):
    report = PreflightChecker(logger, _config(tmp_path, processors=32), provider).check_all()
    assert _kinds(report) == [ErrorKind.CONFIG]


@pytest.mark.unit
def test_bad_config_values(logger, provider, tmp_path):
    report = PreflightChecker(logger, _config(tmp_path, generation=1), provider).check_all()
    assert any("secure_boot requires generation 2" in e.message for e in report.errors)


@pytest.mark.unit
def test_missing_tools(logger, provider, tmp_path):
    cfg = _config(
        tmp_path,
        commands={
            "FFUCapture": "definitely-not-installed-dism /Capture-FFU",
            "DriverDownload": [sys.executable, "-c", "pass"],
            "AppInstallation": ["{work_dir}/install.cmd"],
        },
    )
    report = PreflightChecker(logger, cfg, provider).check_all()
    assert _kinds(report) == [ErrorKind.TOOLS]
    (err,) = report.errors
    assert "definitely-not-installed-dism (FFUCapture)" in err.message
    assert "DriverDownload" not in err.message


@pytest.mark.unit
def test_disk_space(logger, provider, tmp_path):
    with patch.object(U, "free_bytes", return_value=1024):
        report = PreflightChecker(logger, _config(tmp_path, min_free_gb=60), provider).check_all()
    assert _kinds(report) == [ErrorKind.DISK]
    assert report.notes["disk_free"] == "1.00 KiB"


@pytest.mark.unit
def test_unknown_free_space_is_a_warning(logger, provider, tmp_path):
    with patch.object(U, "free_bytes", return_value=None):
        report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert report.ok()
    assert any("free space" in w for w in report.warnings)


@pytest.mark.unit
def test_optional_libraries_only_warn(logger, provider, tmp_path):
    with patch.object(FakeProvider, "optional_enhancements", return_value={"wmi": "polling instead"}):
        report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert report.ok()
    assert "Optional library 'wmi' not installed; polling instead" in report.warnings


@pytest.mark.unit
def test_unwritable_work_dir(logger, provider, tmp_path):
    with patch("ffubuild.orchestrator.preflight.tempfile.mkstemp", side_effect=PermissionError("denied")):
        report = PreflightChecker(logger, _config(tmp_path), provider).check_all()
    assert _kinds(report) == [ErrorKind.PERMISSION]
    assert report.to_dict()["ok"] is False
