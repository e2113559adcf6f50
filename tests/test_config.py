import pytest

from petsos.config import Settings, load_settings
from petsos.errors import InvalidArgument


def test_defaults_when_environment_is_empty() -> None:
    settings = load_settings({})
    assert settings == Settings()
    assert settings.staleness_seconds == 60
    assert settings.sync_mode == "push"


def test_environment_overrides() -> None:
    settings = load_settings(
        {
            "PETSOS_STALENESS_SECONDS": "90",
            "PETSOS_MATCH_RADIUS_METERS": "2500",
            "PETSOS_MATCH_LIMIT": "3",
            "PETSOS_SYNC_MODE": " POLL ",
            "PETSOS_DB_PATH": "/tmp/petsos.db",
        }
    )
    assert settings.staleness_seconds == 90
    assert settings.match_radius_meters == 2500
    assert settings.match_limit == 3
    assert settings.sync_mode == "poll"
    assert settings.db_path == "/tmp/petsos.db"


@pytest.mark.parametrize(
    "env",
    [
        {"PETSOS_STALENESS_SECONDS": "soon"},
        {"PETSOS_MATCH_RADIUS_METERS": "0"},
        {"PETSOS_MATCH_LIMIT": "-2"},
        {"PETSOS_SYNC_MODE": "carrier-pigeon"},
    ],
)
def test_invalid_values_are_rejected(env) -> None:
    with pytest.raises(InvalidArgument):
        load_settings(env)
