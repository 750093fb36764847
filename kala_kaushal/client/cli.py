"""
Command line client for recording and submitting assessments.

    kala-kaushal test-types
    kala-kaushal record --test-type sprint
    kala-kaushal upload --test-type sprint clip.mp4
    kala-kaushal status <assessment-id> --wait

Connection details come from KALA_* environment variables or a .env file.
"""

import argparse
import asyncio
import logging
import mimetypes
import signal
import sys
from pathlib import Path
from typing import Optional
from uuid import UUID

import httpx
from dotenv import load_dotenv

from ..config.settings import ClientSettings
from .api import ApiError, AssessmentApiClient, AssessmentView, build_http_client
from .camera import OpenCVCamera, opencv_encoder_factory
from .capture import CaptureController, CaptureError, RecordedClip, StreamConstraints
from .polling import AssessmentPoller, PollingTimeout
from .session import RecordingSession, SessionState
from .upload import OutcomeKind, UploadCoordinator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _print_progress(percent: float) -> None:
    print(f"\rUploading... {percent:5.1f}%", end="", flush=True)
    if percent >= 100:
        print()


def _print_result(view: AssessmentView) -> None:
    print(f"Assessment {view.id}: {view.status.value}")
    if view.performance_score is not None:
        print(f"Score: {view.performance_score:.1f}/100")
    if view.feedback:
        print(f"Feedback: {view.feedback}")
    for metric in view.metrics:
        unit = f" {metric.unit}" if metric.unit else ""
        print(f"- {metric.metric_name}: {metric.value:g}{unit} (confidence {metric.confidence:.2f})")
    if view.failure_reason:
        results = view.ai_analysis_results or {}
        print(f"Failed: {results.get('error', '')} [{view.failure_reason}]")
        for issue in results.get("issues", []):
            print(f"- {issue}")


def _status_hint(assessment_id: Optional[UUID]) -> str:
    if assessment_id is None:
        return "Check the connection and try again."
    return f"Run `kala-kaushal status {assessment_id} --wait` to check the result."


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _list_test_types(settings: ClientSettings) -> int:
    async with build_http_client(settings) as http:
        api = AssessmentApiClient(http)
        for test_type in await api.list_test_types():
            print(f"{test_type.name:<15} {test_type.category:<12} {test_type.description}")
    return 0


async def _record(settings: ClientSettings, args: argparse.Namespace) -> int:
    async with build_http_client(settings) as http:
        api = AssessmentApiClient(http)
        test_type = await api.find_test_type(args.test_type)

        capture = CaptureController(
            OpenCVCamera(args.camera if args.camera is not None else settings.camera_index),
            opencv_encoder_factory,
            constraints=StreamConstraints(),
            container=settings.container,
        )
        session = RecordingSession(
            capture=capture,
            uploader=UploadCoordinator(http),
            poller=AssessmentPoller(api, interval_seconds=settings.poll_interval_seconds),
            api=api,
            test_type_id=test_type.id,
            max_duration_seconds=args.seconds or settings.max_recording_seconds,
            countdown_seconds=settings.countdown_seconds,
            auto_upload=not args.no_upload,
            on_countdown=lambda n: print(f"{n}...", flush=True),
            on_elapsed=lambda s: print(f"\rRecording {s}s", end="", flush=True),
            on_progress=_print_progress,
        )

        async with session:
            _install_interrupt_handler(session)
            print(f"Recording {test_type.name}. Press Ctrl+C to stop early, or to cancel the upload.")
            try:
                clip = await session.record()
                print()

                if args.output:
                    args.output.write_bytes(clip.data)
                    print(f"Saved clip to {args.output}")

                if session.state == SessionState.RECORDED and not args.no_upload:
                    await session.submit()
            except CaptureError as e:
                print(f"\nCamera error: {e}", file=sys.stderr)
                return 1
            except asyncio.CancelledError:
                print(f"\nStopped waiting. {_status_hint(session.assessment_id)}", file=sys.stderr)
                return 130

            return _report_session(session)


async def _upload_file(settings: ClientSettings, args: argparse.Namespace) -> int:
    path: Path = args.file
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    clip = RecordedClip(
        data=path.read_bytes(),
        mime_type=mime_type,
        duration_seconds=0.0,
        frame_count=0,
    )

    async with build_http_client(settings) as http:
        api = AssessmentApiClient(http)
        test_type = await api.find_test_type(args.test_type)
        assessment = await api.create_assessment(test_type.id, metadata={"source": path.name})
        print(f"Created assessment {assessment.id}")

        uploader = UploadCoordinator(http)
        transfer = await uploader.upload(clip, assessment.id, on_progress=_print_progress)
        outcome = await transfer.wait()
        if not outcome.ok and not outcome.body_sent and not (outcome.response or {}).get("reason"):
            print(f"Upload failed ({outcome.kind.value}): {outcome.message}", file=sys.stderr)
            return 1

        poller = AssessmentPoller(api, interval_seconds=settings.poll_interval_seconds)
        try:
            view = await poller.wait_for_result(assessment.id, timeout_seconds=args.timeout)
        except PollingTimeout as e:
            print(f"Still {e.last_seen.status.value}. {_status_hint(assessment.id)}", file=sys.stderr)
            return 2
        except httpx.TransportError as e:
            print(f"Network error while waiting: {e}. {_status_hint(assessment.id)}", file=sys.stderr)
            return 1
        _print_result(view)
        return 0 if view.status.value == "completed" else 1


async def _status(settings: ClientSettings, args: argparse.Namespace) -> int:
    async with build_http_client(settings) as http:
        api = AssessmentApiClient(http)
        if args.wait:
            poller = AssessmentPoller(api, interval_seconds=settings.poll_interval_seconds)
            try:
                view = await poller.wait_for_result(args.assessment_id, timeout_seconds=args.timeout)
            except PollingTimeout as e:
                print(f"Still {e.last_seen.status.value} after {args.timeout}s", file=sys.stderr)
                return 2
        else:
            view = await api.get_assessment(args.assessment_id)
        _print_result(view)
        return 0


def _report_session(session: RecordingSession) -> int:
    if session.result is not None:
        _print_result(session.result)
        return 0 if session.state == SessionState.COMPLETED else 1
    if session.state == SessionState.PROCESSING:
        print(f"{session.error}. {_status_hint(session.assessment_id)}", file=sys.stderr)
        return 1
    if session.last_outcome is not None and session.last_outcome.kind == OutcomeKind.ABORTED:
        print("Upload cancelled, the clip was not submitted.", file=sys.stderr)
        return 1
    if session.error:
        print(f"Upload failed: {session.error}", file=sys.stderr)
        return 1
    return 0


def _install_interrupt_handler(session: RecordingSession) -> None:
    """Ctrl+C stops a recording, cancels an upload, or stops waiting."""
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()

    def on_interrupt() -> None:
        if session.state == SessionState.RECORDING:
            asyncio.ensure_future(session.stop())
        elif session.state == SessionState.UPLOADING:
            session.abort_upload()
        elif main_task is not None:
            main_task.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl+C aborts instead
        logger.debug("Signal handlers unavailable, Ctrl+C will abort the recording")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kala-kaushal",
        description="Record and submit sports assessments",
    )
    parser.add_argument("--api-url", help="Override KALA_API_BASE_URL")
    parser.add_argument("--user-id", help="Override KALA_USER_ID")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("test-types", help="List available test types")

    record_parser = sub.add_parser("record", help="Record with the camera and submit")
    record_parser.add_argument("--test-type", required=True, help="Test type name, e.g. sprint")
    record_parser.add_argument("--seconds", type=int, help="Recording cap in seconds")
    record_parser.add_argument("--camera", type=int, help="Camera index")
    record_parser.add_argument("--output", type=Path, help="Also save the clip here")
    record_parser.add_argument("--no-upload", action="store_true", help="Record only")

    upload_parser = sub.add_parser("upload", help="Submit an existing video file")
    upload_parser.add_argument("--test-type", required=True, help="Test type name, e.g. sprint")
    upload_parser.add_argument("file", type=Path, help="Video file")
    upload_parser.add_argument("--timeout", type=float, default=180.0, help="Polling deadline in seconds")

    status_parser = sub.add_parser("status", help="Show an assessment")
    status_parser.add_argument("assessment_id", type=UUID)
    status_parser.add_argument("--wait", action="store_true", help="Poll until finished")
    status_parser.add_argument("--timeout", type=float, default=180.0, help="Polling deadline in seconds")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )

    overrides = {}
    if args.api_url:
        overrides["api_base_url"] = args.api_url
    if args.user_id:
        overrides["user_id"] = args.user_id
    settings = ClientSettings(**overrides)

    commands = {
        "test-types": lambda: _list_test_types(settings),
        "record": lambda: _record(settings, args),
        "upload": lambda: _upload_file(settings, args),
        "status": lambda: _status(settings, args),
    }

    try:
        return asyncio.run(commands[args.command]())
    except ApiError as e:
        print(f"API error {e.status_code}: {e.message}", file=sys.stderr)
        return 1
    except httpx.TransportError as e:
        print(f"Network error: {e}. Check the connection and try again.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
