from unittest.mock import patch

import pytest

from conftest import FakeTranscoder, add_job, make_video
from transcode_queue.cli import main
from transcode_queue.queue import EnqueueService, SQLiteJobStore, VideoStatus


def run_cli(*argv):
    with patch("sys.argv", ["transcode-queue", *argv]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--help")
    assert exc_info.value.code == 0


@pytest.mark.parametrize("command", ["serve", "discover", "work", "check"])
def test_cli_subcommand_help(command):
    with pytest.raises(SystemExit) as exc_info:
        run_cli(command, "--help")
    assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    assert "usage:" in capsys.readouterr().out.lower()


def test_cli_queue_without_subcommand_shows_help(capsys):
    run_cli("queue")
    assert "usage:" in capsys.readouterr().out.lower()


def test_cli_check_command_ffmpeg_found(capsys):
    """Test check command when ffmpeg is found."""
    with patch("transcode_queue.ffmpeg_runner.check_ffmpeg", return_value=True):
        run_cli("check")
    assert "ffmpeg found" in capsys.readouterr().out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    """Test check command when ffmpeg is not found."""
    with patch("transcode_queue.ffmpeg_runner.check_ffmpeg", return_value=False):
        with pytest.raises(SystemExit) as exc_info:
            run_cli("check")
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out.lower()


def test_cli_discover_then_status(tmp_path, videos_dir, capsys):
    db = str(tmp_path / "q.db")
    make_video(videos_dir, "a.mp4")
    make_video(videos_dir, "sub/b.mp4")

    run_cli("discover", "--videos", str(videos_dir), "--db", db)
    out = capsys.readouterr().out
    assert "Discovered 2 new videos" in out
    assert "sub/b.mp4" in out

    run_cli("queue", "status", "--db", db)
    out = capsys.readouterr().out
    assert "QUEUE STATUS" in out
    assert "Unprocessed:          2" in out


def test_cli_discover_missing_root(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("discover", "--videos", str(tmp_path / "missing"), "--db", str(tmp_path / "q.db"))
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out.lower()


def test_cli_work_drain(tmp_path, videos_dir, capsys):
    db = str(tmp_path / "q.db")
    make_video(videos_dir, "a.mp4")
    make_video(videos_dir, "bad.mp4")
    run_cli("discover", "--videos", str(videos_dir), "--db", db)

    store = SQLiteJobStore(db)
    service = EnqueueService(store)
    service.enqueue("a.mp4", "720p", "h264")
    service.enqueue("bad.mp4", "Original", "Original")
    store.close()
    capsys.readouterr()

    fake = FakeTranscoder(fail_paths={"bad.mp4"})
    with patch("transcode_queue.runtime.FfmpegTranscoder", return_value=fake):
        run_cli("work", "--drain", "--videos", str(videos_dir), "--db", db, "--workers", "1")

    out = capsys.readouterr().out
    assert "PROCESSING SUMMARY" in out
    assert "Completed:            1" in out
    assert "Failed:               1" in out
    assert sorted(fake.calls) == ["a.mp4", "bad.mp4"]


def test_cli_queue_retry_all(tmp_path, capsys):
    db = str(tmp_path / "q.db")
    store = SQLiteJobStore(db)
    add_job(store, "a.mp4")
    store.update("a.mp4", {"status": "pending", "resolution": "720p", "bitrate": "h264"})
    store.update("a.mp4", {"status": VideoStatus.PROCESSING})
    store.update("a.mp4", {"status": VideoStatus.FAILED, "error": "boom"})
    store.close()

    run_cli("queue", "retry", "--db", db)
    assert "Retried 1 failed jobs" in capsys.readouterr().out

    store = SQLiteJobStore(db)
    try:
        assert store.get("a.mp4").status == VideoStatus.PENDING
    finally:
        store.close()


def test_cli_queue_retry_unknown_id(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("queue", "retry", "ghost.mp4", "--db", str(tmp_path / "q.db"))
    assert exc_info.value.code == 1
    assert "ghost.mp4" in capsys.readouterr().out


def test_cli_queue_reclaim(tmp_path, capsys):
    run_cli("queue", "reclaim", "--stale-after", "60", "--memory")
    assert "Reclaimed 0 stale jobs" in capsys.readouterr().out


def test_cli_bad_config_file_exits(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("--config", str(tmp_path / "missing.yaml"), "queue", "status", "--memory")
    assert exc_info.value.code == 2
    assert "Config file not found" in capsys.readouterr().out


def test_cli_serve_runs_uvicorn(tmp_path):
    with patch("uvicorn.run") as mock_run:
        run_cli("serve", "--memory", "--no-workers", "--port", "9123")
    mock_run.assert_called_once()
    assert mock_run.call_args.kwargs["port"] == 9123
