"""
Unit tests for the command-line client.

Commands run against ``httpx.MockTransport`` handlers; no server is needed.
"""

from pathlib import Path
from uuid import uuid4

import httpx
import pytest

from kala_kaushal.client import cli
from kala_kaushal.client.api import build_http_client
from kala_kaushal.client.cli import build_parser


def run_cli(monkeypatch, handler, argv):
    """Run ``cli.main`` with every HTTP request answered by ``handler``."""
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(
        cli,
        "build_http_client",
        lambda settings: build_http_client(settings, transport=httpx.MockTransport(handler)),
    )
    return cli.main(["--api-url", "http://api.test", "--user-id", "athlete-1", *argv])


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("All connection attempts failed", request=request)


class TestBuildParser:
    def test_record_options(self):
        args = build_parser().parse_args(
            ["--user-id", "athlete-9", "record", "--test-type", "sprint", "--seconds", "10", "--no-upload"]
        )

        assert args.command == "record"
        assert args.user_id == "athlete-9"
        assert args.test_type == "sprint"
        assert args.seconds == 10
        assert args.no_upload
        assert args.output is None

    def test_upload_takes_a_path(self):
        args = build_parser().parse_args(["upload", "--test-type", "vertical_jump", "clip.mp4"])

        assert args.file == Path("clip.mp4")
        assert args.timeout == 180.0

    def test_status_defaults(self):
        assessment_id = uuid4()

        args = build_parser().parse_args(["status", str(assessment_id)])

        assert args.assessment_id == assessment_id
        assert not args.wait
        assert args.timeout == 180.0

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_status_rejects_bad_id(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["status", "not-a-uuid"])


class TestNetworkFailures:
    def test_unreachable_server_is_reported(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, refuse, ["test-types"]) == 1

        err = capsys.readouterr().err
        assert "Network error" in err
        assert "Traceback" not in err

    def test_status_with_unreachable_server(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, refuse, ["status", str(uuid4()), "--wait"]) == 1
        assert "Network error" in capsys.readouterr().err

    def test_connection_lost_while_waiting_for_result(self, monkeypatch, capsys, tmp_path):
        """After a successful upload the user is told how to check the result later."""
        clip = tmp_path / "sprint.mp4"
        clip.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        test_type_id = str(uuid4())
        assessment_id = str(uuid4())

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/api/v1/test-types":
                return httpx.Response(200, json=[{"id": test_type_id, "name": "sprint"}])
            if path == "/api/v1/assessments":
                return httpx.Response(201, json={"id": assessment_id, "status": "pending"})
            if path.endswith("/upload-video"):
                return httpx.Response(200, json={"message": "Video analyzed successfully"})
            return refuse(request)

        assert run_cli(monkeypatch, handler, ["upload", "--test-type", "sprint", str(clip)]) == 1

        err = capsys.readouterr().err
        assert "Network error while waiting" in err
        assert f"kala-kaushal status {assessment_id} --wait" in err
