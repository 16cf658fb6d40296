import logging
import subprocess
import sys

import pytest

from salon_tokens.app import main


def test_app_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_tokens.app", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "main entrypoint" in out
    assert "submit" in out
    assert "serve-next" in out


def test_submit_help_runs():
    proc = subprocess.run(
        [sys.executable, "-m", "salon_tokens.app", "submit", "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0
    out = proc.stdout + proc.stderr
    assert "--mobile" in out
    assert "--database-url" in out


@pytest.fixture
def db(tmp_path):
    return ["--database-url", f"sqlite:///{tmp_path / 'desk.db'}"]


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # main() points the package logger at the captured stderr.
    logger = logging.getLogger("salon_tokens")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


def test_desk_session(db, capsys):
    assert main(["submit", *db, "--queue", "male", "--service", "Haircut", "--name", "Ravi", "--mobile", "9876543210"]) == 0
    assert main(["submit", *db, "--queue", "male", "--service", "Beard Trim", "--name", "Ali", "--mobile", "9876543211"]) == 0
    out = capsys.readouterr().out
    assert "[submit] issued M1 (Haircut) for Ravi; 0 ahead" in out
    assert "[submit] issued M2 (Beard Trim) for Ali; 1 ahead" in out

    assert main(["serve-next", *db, "--queue", "male"]) == 0
    assert "now serving M1 (Ravi)" in capsys.readouterr().out

    assert main(["board", *db, "--queue", "male"]) == 0
    assert "serving=M1 last_issued=M2 waiting=1" in capsys.readouterr().out

    assert main(["serve-next", *db, "--queue", "female"]) == 0
    assert "no tokens waiting in female" in capsys.readouterr().out


def test_errors_map_to_exit_codes(db, capsys):
    code = main(["submit", *db, "--queue", "male", "--service", "Haircut", "--name", "Ravi", "--mobile", "12345"])
    assert code == 2
    assert "[error] validation_error" in capsys.readouterr().err

    assert main(["serve", *db, "no-such-token"]) == 4

    main(["submit", *db, "--queue", "male", "--service", "Haircut", "--name", "Ravi", "--mobile", "9876543210"])
    token_id = capsys.readouterr().out.split("id=")[1].strip()
    assert main(["serve", *db, token_id]) == 0
    assert main(["serve-next", *db, "--queue", "male"]) == 0
    # M1 is served now; calling it back is refused.
    assert main(["serve", *db, token_id]) == 5
