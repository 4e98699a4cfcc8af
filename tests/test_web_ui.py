import configparser
from pathlib import Path

import pytest

from web_ui import app


@pytest.fixture
def client(tmp_path: Path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[DEFAULT]\nCONFIRMATION_NUMBER = ABC123\nIS_BACKUP = True\n", encoding="utf-8")
    app.config.update(TESTING=True, CONFIG_PATH=str(config_path))
    with app.test_client() as test_client:
        yield test_client, config_path


def test_form_shows_current_values(client) -> None:
    test_client, _ = client
    response = test_client.get("/")

    assert response.status_code == 200
    body = response.get_data(as_text=True)
    assert 'value="ABC123"' in body
    assert "checked" in body


def test_post_saves_configuration(client) -> None:
    test_client, config_path = client
    response = test_client.post(
        "/",
        data={
            "CONFIRMATION_NUMBER": " XYZ789 ",
            "FIRST_NAME": "Ada",
            "LAST_NAME": "Lovelace",
            "CHECKIN_OPENS_AT": "2026-05-01T14:30:00Z",
            "SAFETY_MARGIN_MS": "120",
        },
    )

    assert response.get_data(as_text=True) == "Configuration saved successfully!"
    saved = configparser.ConfigParser()
    saved.optionxform = str
    saved.read(config_path)
    assert saved["DEFAULT"]["CONFIRMATION_NUMBER"] == "XYZ789"
    assert saved["DEFAULT"]["SAFETY_MARGIN_MS"] == "120"
    # An unticked checkbox is not submitted at all.
    assert saved["DEFAULT"]["IS_BACKUP"] == "False"
    assert saved["DEFAULT"]["PROXY_SERVER"] == ""
