"""
enginelab Test Suite - Topology Tests
=====================================
"""

import pytest

from enginelab.core.exceptions import (
    ConfigurationError,
    OverlappingCoreSelection,
    TopologyUnavailable,
)
from enginelab.isolation.topology import CpuInfo, Topology, TopologyInspector


@pytest.fixture
def smt_pair_topology():
    """Two cores with two threads each: cpu0/cpu2 share core 0, cpu1/cpu3 share core 1."""
    return Topology(
        cpus_by_id={
            0: CpuInfo(0, (0, 0)),
            1: CpuInfo(1, (0, 1)),
            2: CpuInfo(2, (0, 0)),
            3: CpuInfo(3, (0, 1)),
        }
    )


class TestTopology:
    def test_cores(self, smt_pair_topology):
        assert smt_pair_topology.cores == {(0, 0): [0, 2], (0, 1): [1, 3]}

    def test_siblings_of(self, smt_pair_topology):
        assert smt_pair_topology.siblings_of((0, 0)) == {0, 2}
        assert smt_pair_topology.siblings_of((9, 9)) == set()

    def test_core_of_unknown_cpu(self, smt_pair_topology):
        with pytest.raises(TopologyUnavailable):
            smt_pair_topology.core_of(42)

    def test_core_of_offline_cpu(self):
        topology = Topology(cpus_by_id={0: CpuInfo(0, (0, 0)), 1: CpuInfo(1, None, online=False)})
        assert topology.cpus == [0, 1]
        assert topology.online_cpus == [0]
        with pytest.raises(TopologyUnavailable, match="offline"):
            topology.core_of(1)


class TestValidateSelection:
    """A selection takes at most one logical CPU per physical core."""

    def test_distinct_cores_accepted(self, smt_pair_topology):
        assert smt_pair_topology.validate_selection([1, 0]) == [1, 0]

    def test_smt_pair_rejected(self, smt_pair_topology):
        with pytest.raises(OverlappingCoreSelection) as exc_info:
            smt_pair_topology.validate_selection([0, 2])
        assert exc_info.value.core == (0, 0)
        assert exc_info.value.cpus == [0, 2]
        assert "core 0" in str(exc_info.value)

    def test_empty_rejected(self, smt_pair_topology):
        with pytest.raises(ConfigurationError):
            smt_pair_topology.validate_selection([])

    def test_duplicates_rejected(self, smt_pair_topology):
        with pytest.raises(ConfigurationError, match="repeats"):
            smt_pair_topology.validate_selection([1, 1])


class TestTopologyInspector:
    """Tests for reading topology from a sysfs tree."""

    def test_reads_fake_sysfs(self, settings):
        topology = TopologyInspector(settings).read()
        assert topology.cpus == list(range(16))
        assert topology.core_of(14) == (0, 6)
        assert topology.siblings_of((0, 6)) == {6, 14}

    def test_cpu0_without_online_file_is_online(self, settings):
        topology = TopologyInspector(settings).read()
        assert 0 in topology.online_cpus

    def test_offline_cpu_has_unknown_core(self, settings, fake_kernel):
        fake_kernel.write(fake_kernel.cpu_file(6, "online"), 0)
        topology = TopologyInspector(settings).read()
        assert 6 in topology.cpus
        assert 6 not in topology.online_cpus
        assert topology.siblings_of((0, 6)) == {14}

    def test_package_id_distinguishes_cores(self, settings, fake_kernel):
        fake_kernel.write(fake_kernel.cpu_file(14, "topology/physical_package_id"), 1)
        topology = TopologyInspector(settings).read()
        assert topology.core_of(14) == (1, 6)
        assert topology.validate_selection([6, 14]) == [6, 14]

    def test_missing_sysfs(self, settings, tmp_path):
        inspector = TopologyInspector(settings.with_overrides(sysfs_root=tmp_path / "nothing"))
        with pytest.raises(TopologyUnavailable):
            inspector.read()

    def test_no_readable_topology(self, settings, tmp_path):
        (tmp_path / "empty" / "devices" / "system" / "cpu" / "cpu0").mkdir(parents=True)
        inspector = TopologyInspector(settings.with_overrides(sysfs_root=tmp_path / "empty"))
        with pytest.raises(TopologyUnavailable):
            inspector.read()
