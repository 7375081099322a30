import pytest
import requests
import responses

from hyrelay.update import ReleaseInfo, check_update, fetch_latest_release

URL = "https://updates.example.com/latest"

RELEASE = {
    "html_url": "https://updates.example.com/releases/v2.0.0",
    "tag_name": "v2.0.0",
    "created_at": "2023-01-01T00:00:00Z",
    "published_at": "2023-01-02T00:00:00Z",
    "other": 1,
}


def test_fetch_maps_fields():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, json=RELEASE)
        info = fetch_latest_release(URL)
    assert info == ReleaseInfo(
        url=RELEASE["html_url"],
        tag_name=RELEASE["tag_name"],
        created_at=RELEASE["created_at"],
        published_at=RELEASE["published_at"],
    )


def test_fetch_invalid_json_raises():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body="<html>")
        with pytest.raises(ValueError):
            fetch_latest_release(URL)


def test_fetch_non_object_raises():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, json=["v2.0.0"])
        with pytest.raises(ValueError):
            fetch_latest_release(URL)


def test_check_update_reports_new_version():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, json=RELEASE)
        info = check_update("v1.3.0-dirty", URL)
    assert info.tag_name == "v2.0.0"
    assert info.url == RELEASE["html_url"]


def test_check_update_same_version_ignores_suffix():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, json=RELEASE)
        assert check_update("v2.0.0-rc1-abc", URL) is None


def test_check_update_network_error_is_silent():
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=requests.ConnectionError("down"))
        assert check_update("v1.0.0", URL) is None