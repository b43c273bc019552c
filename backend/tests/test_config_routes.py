"""Tests for routes/config.py: reading and updating settings at runtime."""

from config import get_settings


def test_get_config_masks_key(client, monkeypatch):
    from config import reload_settings

    monkeypatch.setenv("SCOOTY_OPENSUBTITLES_API_KEY", "secret")
    reload_settings()
    data = client.get("/config").get_json()
    assert data["opensubtitles_api_key"] == "***configured***"
    assert data["hwaccel"] == "software"


def test_put_updates_supervisor(client, gateway):
    resp = client.put("/config", json={
        "transcode_video_bitrate": "6M",
        "terminate_grace_seconds": "0.5",
        "bogus": 1,
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["updated_keys"] == ["terminate_grace_seconds", "transcode_video_bitrate"]
    assert body["config"]["transcode_video_bitrate"] == "6M"
    assert get_settings().terminate_grace_seconds == 0.5
    assert gateway.supervisor.video_bitrate == "6M"
    assert gateway.supervisor.grace_seconds == 0.5


def test_overrides_accumulate(client):
    client.put("/config", json={"ffprobe_timeout": "45"})
    client.put("/config", json={"request_timeout": "20"})
    settings = get_settings()
    assert settings.ffprobe_timeout == 45
    assert settings.request_timeout == 20


def test_masked_key_is_not_written_back(client, gateway):
    client.put("/config", json={"opensubtitles_api_key": " new-key "})
    assert get_settings().opensubtitles_api_key == "new-key"
    assert gateway._search_client is None

    client.put("/config", json={"opensubtitles_api_key": "***configured***", "ffprobe_timeout": "40"})
    assert get_settings().opensubtitles_api_key == "new-key"


def test_unchanged_value_reports_no_keys(client):
    resp = client.put("/config", json={"hwaccel": "software"})
    assert resp.get_json()["updated_keys"] == []


def test_put_without_known_keys(client):
    resp = client.put("/config", json={"nothing": "here"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "bad_request"
    assert client.put("/config", data="not json", content_type="text/plain").status_code == 400
