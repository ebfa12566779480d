# SPDX-License-Identifier: LGPL-3.0-or-later
import pytest

from ffubuild.core.exceptions import ProviderUnavailable
from ffubuild.messaging import Reporter
from ffubuild.providers import get_provider, provider_names
from ffubuild.providers.hyperv import HyperVProvider
from ffubuild.providers.vmware import DEFAULT_VMREST_URL, VMwareWorkstationProvider


@pytest.mark.unit
def test_names():
    assert provider_names() == ["hyperv", "vmware"]


@pytest.mark.unit
@pytest.mark.parametrize(
    "name, cls",
    [
        ("hyperv", HyperVProvider),
        ("Hyper-V", HyperVProvider),
        ("vmware", VMwareWorkstationProvider),
        (" workstation ", VMwareWorkstationProvider),
    ],
)
def test_aliases(name, cls, logger, registry):
    assert isinstance(get_provider(name, logger, registry), cls)


@pytest.mark.unit
def test_unknown(logger, registry):
    with pytest.raises(ProviderUnavailable) as ei:
        get_provider("virtualbox", logger, registry)
    assert ei.value.code == 2
    assert "hyperv" in str(ei.value)


@pytest.mark.unit
def test_options_reach_backend(logger, registry, ctx, tmp_path):
    p = get_provider(
        "vmware",
        logger,
        registry,
        reporter=Reporter(logger, ctx),
        work_dir=tmp_path,
        vmrest_url=DEFAULT_VMREST_URL + "/",
        poll_interval_s=0.5,
    )
    assert p.vmrest_url == DEFAULT_VMREST_URL
    assert p.work_dir == tmp_path
    assert p.poll_interval_s == 0.5
    assert p.reporter.source == "vmware"

    h = get_provider("hyperv", logger, registry, use_events=False)
    assert h.use_events is False
