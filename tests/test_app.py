import subprocess
import sys


def run_app(*args):
    proc = subprocess.run(
        [sys.executable, "-m", "clinic_queue.app", *args],
        capture_output=True,
        text=True,
        check=False,
    )
    return proc.returncode, proc.stdout + proc.stderr


def test_app_help_runs():
    code, out = run_app("-h")
    assert code == 0
    assert "main entrypoint" in out
    for cmd in ("serve", "kiosk", "call-next", "lookup", "generate"):
        assert cmd in out


def test_kiosk_help_runs():
    code, out = run_app("kiosk", "-h")
    assert code == 0
    assert "--service" in out
    assert "--triage" in out
    assert "--mqtt-host" in out


def test_serve_help_is_forwarded():
    code, out = run_app("serve", "-h")
    assert code == 0
    assert "dispatch server" in out
    assert "--token" in out
    assert "--no-seed" in out


def test_generate_help_is_forwarded():
    code, out = run_app("generate", "-h")
    assert code == 0
    assert "--rate" in out


def test_admin_help_runs():
    code, out = run_app("admin-counter", "-h")
    assert code == 0
    assert "counter_id" in out
    assert "--active" in out
    assert "--token" in out


def test_serve_help_lists_workers():
    code, out = run_app("serve", "-h")
    assert code == 0
    assert "--workers" in out
