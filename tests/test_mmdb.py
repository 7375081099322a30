import pytest
import requests
import responses

from hyrelay.mmdb import download_mmdb, ensure_mmdb

URL = "https://geo.example.com/country.mmdb"
PAYLOAD = b"\x00\x01mmdb-data" * 100


def test_download_writes_body(tmp_path):
    target = tmp_path / "db.mmdb"
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=PAYLOAD)
        download_mmdb(target, URL)
    assert target.read_bytes() == PAYLOAD


def test_ensure_existing_file_is_not_downloaded(tmp_path):
    target = tmp_path / "db.mmdb"
    target.write_bytes(b"local")
    with responses.RequestsMock() as rsps:
        result = ensure_mmdb(target, URL)
        assert len(rsps.calls) == 0
    assert result == str(target)
    assert target.read_bytes() == b"local"


def test_ensure_missing_file_downloads(tmp_path):
    target = tmp_path / "db.mmdb"
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=PAYLOAD)
        result = ensure_mmdb(str(target), URL)
    assert result == str(target)
    assert target.read_bytes() == PAYLOAD


def test_ensure_download_failure_raises(tmp_path):
    target = tmp_path / "db.mmdb"
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=requests.ConnectionError("down"))
        with pytest.raises(requests.ConnectionError):
            ensure_mmdb(target, URL)
    assert not target.exists()