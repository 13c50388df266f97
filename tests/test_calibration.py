import pytest

from services.calibration import apply_offset, calibration_store, validate_offset
from services.errors import ConfigError


@pytest.mark.parametrize(
    ("direction", "offset", "expected"),
    [
        (350.0, 20, 10.0),
        (10.0, -20, 350.0),
        (0.0, 180, 180.0),
        (360.0, 0, 0.0),
        (None, 15, None),
    ],
)
def test_offset_wraps_into_compass_range(direction, offset, expected):
    assert apply_offset(direction, offset) == expected


def test_validate_offset_bounds():
    assert validate_offset("12") == 12
    assert validate_offset(12.0) == 12
    assert validate_offset(-180) == -180
    for bad in (180.5, -200, "abc", True, float("nan")):
        with pytest.raises(ConfigError):
            validate_offset(bad)


@pytest.mark.anyio
async def test_offset_persists():
    assert await calibration_store.get_offset() == 0
    await calibration_store.set_offset(15)
    assert await calibration_store.get_offset() == 15
    assert await calibration_store.apply(350.0) == 5.0


@pytest.mark.parametrize("fractional", [10.4, "12.4", -0.5])
def test_fractional_offset_is_rejected(fractional):
    with pytest.raises(ConfigError, match="whole number"):
        validate_offset(fractional)
