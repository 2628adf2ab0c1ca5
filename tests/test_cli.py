import re
from unittest.mock import patch

import pytest

from frame_pipeline.cli import main
from frame_pipeline.queue.models import JobStatus
from frame_pipeline.queue.sqlite_backend import SQLiteJobStore


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


def _submit(db_path, capsys, input_ref="file123"):
    main(["--db", db_path, "submit", input_ref])
    out = capsys.readouterr().out
    return re.search(r"(job_[0-9a-f]+)", out).group(1)


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["frame-pipeline", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_worker_help():
    with patch("sys.argv", ["frame-pipeline", "worker", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_submit_has_no_worker_options():
    """Input lookup happens in the worker, so submit takes only the reference."""
    with pytest.raises(SystemExit) as exc_info:
        main(["submit", "file123", "--uploads-dir", "elsewhere"])
    assert exc_info.value.code == 2


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["frame-pipeline"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_cli_check_command_ffmpeg_found(capsys):
    with patch("frame_pipeline.cli.check_ffmpeg", return_value=True):
        main(["check"])
    assert "ffmpeg found" in capsys.readouterr().out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    with patch("frame_pipeline.cli.check_ffmpeg", return_value=False):
        with pytest.raises(SystemExit) as exc_info:
            main(["check"])
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out.lower()


def test_cli_submit_and_status(db_path, capsys):
    job_id = _submit(db_path, capsys)

    main(["--db", db_path, "status", job_id])
    out = capsys.readouterr().out
    assert job_id in out
    assert "pending" in out
    assert "0%" in out


def test_cli_status_unknown_job(db_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        main(["--db", db_path, "status", "job_missing"])
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out.lower()


def test_cli_list(db_path, capsys):
    main(["--db", db_path, "list"])
    assert "No jobs." in capsys.readouterr().out

    first = _submit(db_path, capsys, "a")
    second = _submit(db_path, capsys, "b")

    main(["--db", db_path, "list"])
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith(second)
    assert lines[1].startswith(first)


def test_cli_cancel(db_path, capsys):
    job_id = _submit(db_path, capsys)

    main(["--db", db_path, "cancel", job_id])
    assert "Cancelled" in capsys.readouterr().out

    with pytest.raises(SystemExit) as exc_info:
        main(["--db", db_path, "cancel", job_id])
    assert exc_info.value.code == 1


def test_cli_worker_drain_and_watch(db_path, isolated_cwd, capsys):
    """A job for a missing upload is drained to FAILED without touching ffmpeg."""
    (isolated_cwd / "uploads").mkdir()
    job_id = _submit(db_path, capsys, "ghost")

    main(["--db", db_path, "worker", "--drain", "--poll-interval", "0.01"])
    assert "Processed 1 job(s)" in capsys.readouterr().out

    store = SQLiteJobStore(db_path)
    job = store.get(job_id)
    store.close()
    assert job.status == JobStatus.FAILED
    assert "not found" in job.error

    with pytest.raises(SystemExit) as exc_info:
        main(["--db", db_path, "watch", job_id, "--interval", "0.01"])
    assert exc_info.value.code == 1
    assert "failed" in capsys.readouterr().out
