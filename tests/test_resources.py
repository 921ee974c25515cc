import pytest

from mlxctl.model.resources import Capacity, ResourceRequest, format_memory, parse_cpu, parse_memory


@pytest.mark.parametrize("value, cores", [("500m", 0.5), ("2", 2.0), (4, 4.0), ("1.5", 1.5)])
def test_parse_cpu(value, cores):
    assert parse_cpu(value) == cores


@pytest.mark.parametrize("value, num_bytes", [("4Gi", 4 * 1024 ** 3), ("512M", 512 * 1000 ** 2), ("1Ki", 1024), (2048, 2048)])
def test_parse_memory(value, num_bytes):
    assert parse_memory(value) == num_bytes


@pytest.mark.parametrize("value", ["2Gb", "lots", ""])
def test_parse_memory_rejects_garbage(value):
    with pytest.raises(ValueError):
        parse_memory(value)


def test_format_memory():
    assert format_memory(4 * 1024 ** 3) == "4Gi"
    assert format_memory(1536 * 1024 ** 2) == "1.5Gi"
    assert format_memory(100) == "100"


def test_capacity_fits_request():
    capacity = Capacity(cpu=4.0, memory=parse_memory("8Gi"), gpu=1)
    assert capacity.fits(ResourceRequest(cpu="4", memory="8Gi", gpu=1))
    assert not capacity.fits(ResourceRequest(cpu="4500m", memory="1Gi"))
    assert not capacity.fits(ResourceRequest(cpu="1", memory="1Gi", gpu=2))
