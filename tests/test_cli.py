"""Tests for the command-line front end."""

import json

import pytest

from distribution_engine.cli import main


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "engine.yaml"
    path.write_text(
        "storage:\n"
        f"  store_path: {tmp_path / 'jobs.json'}\n"
        f"  delivery_log_path: {tmp_path / 'log.json'}\n"
        "retry:\n"
        "  jitter_fraction: 0\n"
        "log_level: WARNING\n"
        "channels:\n"
        "  discord:\n"
        "    url: https://discord.com/api/webhooks/test\n",
        encoding="utf-8",
    )
    return path


def _run(config_file, *args):
    main(["--config", str(config_file), *args])


def _schedule(config_file, capsys, *extra):
    _run(config_file, "schedule", "--content-id", "essay-1", "--targets", "discord",
         "--title", "New Essay", "--url", "https://example.com/essay", *extra)
    return capsys.readouterr().out.strip()


class TestCli:
    def test_no_command_prints_help(self, capsys):
        main([])
        assert "usage:" in capsys.readouterr().out

    def test_schedule_run_status(self, config_file, capsys):
        job_id = _schedule(config_file, capsys)
        assert len(job_id) == 32

        _run(config_file, "run", "--once")
        out = capsys.readouterr().out
        assert "Dispatched 1 target(s)." in out
        assert "[OK]" in out

        _run(config_file, "status", job_id, "--json")
        data = json.loads(capsys.readouterr().out)
        assert data["job"]["state"] == "completed"
        assert data["job"]["snapshot"]["title"] == "New Essay"

    def test_status_text(self, config_file, capsys):
        job_id = _schedule(config_file, capsys, "--at", "2099-01-01T00:00:00")
        _run(config_file, "status", job_id)
        out = capsys.readouterr().out
        assert f"Job {job_id} [SCHEDULED]" in out
        assert "[PENDING] discord:default attempts=0" in out

    def test_reschedule_and_cancel(self, config_file, capsys):
        job_id = _schedule(config_file, capsys, "--at", "2099-01-01T00:00:00")

        _run(config_file, "reschedule", job_id, "--at", "2099-06-01T12:00:00+00:00")
        assert "2099-06-01T12:00:00+00:00" in capsys.readouterr().out

        _run(config_file, "cancel", job_id)
        out = capsys.readouterr().out
        assert "[CANCELLED]" in out
        assert "[ABANDONED] discord:default" in out

    def test_log(self, config_file, capsys):
        job_id = _schedule(config_file, capsys)
        _run(config_file, "run", "--once")
        capsys.readouterr()

        _run(config_file, "log", "--job", job_id)
        assert "All records: 1" in capsys.readouterr().out

        _run(config_file, "log", "--failures")
        assert "Failures: 0" in capsys.readouterr().out

    def test_sweep(self, config_file, capsys):
        _run(config_file, "sweep")
        assert "Released 0 expired lease(s)." in capsys.readouterr().out

    def test_channels(self, config_file, capsys):
        _run(config_file, "channels")
        out = capsys.readouterr().out
        assert "Live mode: False" in out
        assert "discord: webhook" in out

    def test_unknown_job_exits_with_error(self, config_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            _run(config_file, "status", "missing")
        assert exc_info.value.code == 1
        assert "No distribution job" in capsys.readouterr().err

    def test_unknown_channel_exits_with_error(self, config_file, capsys):
        with pytest.raises(SystemExit):
            _run(config_file, "schedule", "--content-id", "x", "--targets", "bluesky:main")
        assert "bluesky" in capsys.readouterr().err

    def test_bad_time_exits_with_error(self, config_file, capsys):
        with pytest.raises(SystemExit):
            _run(config_file, "schedule", "--content-id", "x", "--targets", "discord", "--at", "tomorrow")
        assert "Invalid time" in capsys.readouterr().err
