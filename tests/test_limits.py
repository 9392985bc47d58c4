import pytest

from judger.core.errors import ConfigError
from judger.core.limits import DEFAULT_LIMITS, resolve_limits


def test_defaults():
    lim = resolve_limits()
    assert lim.wall_time_ms == DEFAULT_LIMITS["wall_time_ms"]
    assert lim.network_enabled is False
    assert lim.cpu_time_ms is None


def test_layers_override_in_order():
    lim = resolve_limits(
        defaults={"time_limit_ms": 1000, "memory_limit_bytes": 64 << 20},
        language={"time_limit_ms": 3000, "max_processes": 32},
        problem={"time_limit_ms": 1500},
    )
    assert lim.wall_time_ms == 1500
    assert lim.memory_bytes == 64 << 20
    assert lim.max_processes == 32


def test_none_does_not_override():
    lim = resolve_limits(defaults={"time_limit_ms": 1000}, problem={"time_limit_ms": None})
    assert lim.wall_time_ms == 1000


def test_checker_option_is_not_a_limit():
    lim = resolve_limits(problem={"checker": "lines", "max_output_bytes": 1024})
    assert lim.max_output_bytes == 1024


@pytest.mark.parametrize("bad", [
    {"time_limit_ms": 0},
    {"memory_limit_bytes": -1},
    {"max_processes": "many"},
    {"max_output_bytes": True},
    {"network_enabled": "yes"},
    {"stack_size": 10},
])
def test_rejects_bad_values(bad):
    with pytest.raises(ConfigError):
        resolve_limits(problem=bad)


def test_cpu_time_cannot_exceed_wall_time():
    with pytest.raises(ConfigError):
        resolve_limits(problem={"time_limit_ms": 1000, "cpu_time_ms": 2000})
    assert resolve_limits(problem={"time_limit_ms": 1000, "cpu_time_ms": 800}).cpu_time_ms == 800


def test_memory_mb():
    assert resolve_limits(problem={"memory_limit_bytes": 256 << 20}).memory_mb == 256
