"""Tests for the call service HTTP client."""
from unittest.mock import MagicMock, patch

import requests

from virtualphone.client import KeepAlivePinger, PhoneClient


def make_response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.json.return_value = payload
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status_code} error")
    return resp


@patch("virtualphone.client.time.sleep")
@patch("virtualphone.client.requests.get")
def test_warmup_retries_until_server_answers(mock_get, mock_sleep):
    mock_get.side_effect = [
        requests.exceptions.ConnectionError("cold start"),
        make_response(503),
        make_response(200, {"status": "running"}),
    ]

    assert PhoneClient("http://phone.test/").warmup(attempts=3, pause=0.5) is True
    assert mock_get.call_count == 3
    assert mock_sleep.call_count == 2
    assert mock_get.call_args[0][0] == "http://phone.test/api/status"


@patch("virtualphone.client.time.sleep")
@patch("virtualphone.client.requests.get")
def test_warmup_gives_up(mock_get, mock_sleep):
    mock_get.side_effect = requests.exceptions.Timeout("asleep")

    assert PhoneClient("http://phone.test").warmup(attempts=2) is False
    assert mock_sleep.call_count == 1


@patch("virtualphone.client.requests.get")
def test_check_status_handles_network_error(mock_get):
    mock_get.side_effect = requests.exceptions.ConnectionError("down")

    assert PhoneClient("http://phone.test").check_status() is False


@patch("virtualphone.client.requests.post")
def test_start_call_returns_call_id(mock_post):
    mock_post.return_value = make_response(200, {"callId": "1700000000000"})

    call_id = PhoneClient("http://phone.test").start_call("13800138000")

    assert call_id == "1700000000000"
    assert mock_post.call_args[1]["json"] == {"phoneNumber": "13800138000"}


@patch("virtualphone.client.requests.post")
def test_hangup_of_forgotten_call_counts_as_done(mock_post):
    mock_post.return_value = make_response(404, {"error": "Call not found"})

    assert PhoneClient("http://phone.test").hangup("1700000000000") is True


@patch("virtualphone.client.requests.get")
def test_get_records_returns_empty_list_on_error(mock_get):
    mock_get.return_value = make_response(500)

    assert PhoneClient("http://phone.test").get_records() == []
    assert mock_get.call_args[1]["headers"]["Cache-Control"] == "no-cache"


@patch("virtualphone.client.requests.get")
def test_get_merged_records_unwraps_payload(mock_get):
    mock_get.return_value = make_response(200, {"records": [{"id": "a"}], "syncTime": 1})

    assert PhoneClient("http://phone.test").get_merged_records() == [{"id": "a"}]


@patch("virtualphone.client.requests.post")
def test_sync_records(mock_post):
    mock_post.return_value = make_response(200, {"success": True, "records": [{"id": "a"}], "recordCount": 1})

    records = PhoneClient("http://phone.test").sync_records([{"number": "13700000000"}])

    assert records == [{"id": "a"}]
    assert mock_post.call_args[1]["json"] == {"records": [{"number": "13700000000"}]}


@patch("virtualphone.client.requests.post")
def test_sync_records_failure_returns_none(mock_post):
    mock_post.side_effect = requests.exceptions.ConnectionError("down")

    assert PhoneClient("http://phone.test").sync_records([]) is None


@patch("virtualphone.client.requests.get")
def test_keep_alive_ping(mock_get):
    mock_get.return_value = make_response(200)
    pinger = KeepAlivePinger("http://phone.test/keep-alive", interval=60)

    assert pinger.ping() is True
    assert pinger.pings == 1
    mock_get.assert_called_once_with("http://phone.test/keep-alive", timeout=3)


@patch("virtualphone.client.requests.get")
def test_keep_alive_ping_failure(mock_get):
    mock_get.side_effect = requests.exceptions.ConnectionError("down")
    pinger = KeepAlivePinger("http://phone.test/keep-alive")

    assert pinger.ping() is False
    assert pinger.pings == 0


def test_keep_alive_start_and_stop():
    pinger = KeepAlivePinger("http://phone.test/keep-alive", interval=3600)

    pinger.start()
    assert pinger._thread.is_alive()
    pinger.stop()

    assert pinger._thread is None
