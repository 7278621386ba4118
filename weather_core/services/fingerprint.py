UNIT_SYSTEMS = ("metric", "imperial")
COORD_DECIMALS = 2


def _check_units(units: str) -> str:
    if units not in UNIT_SYSTEMS:
        raise ValueError(f"Unsupported unit system: {units!r}")
    return units


def city_fingerprint(city: str, units: str) -> str:
    """Cache identity for a place-name query, e.g. ``"london:metric"``."""
    name = city.strip().lower()
    if not name:
        raise ValueError("City name must not be empty")
    return f"{name}:{_check_units(units)}"


def coords_fingerprint(lat: float, lon: float, units: str, decimals: int = COORD_DECIMALS) -> str:
    """Cache identity for a coordinate query, e.g. ``"11.56:104.93:metric"``.

    Coordinates that format to the same ``decimals`` places share one
    identity. At two places that is a grid of roughly 1.1 km at the
    equator, so nearby queries hit the same cache entry. Values that round
    to zero from below format as ``0.00``, never ``-0.00``.
    """
    # adding 0.0 turns -0.0 into 0.0
    lat = round(lat, decimals) + 0.0
    lon = round(lon, decimals) + 0.0
    return f"{lat:.{decimals}f}:{lon:.{decimals}f}:{_check_units(units)}"
