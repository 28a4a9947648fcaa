import pytest

from storycards.cli import main
from storycards.storage import Storage


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "echo")
    return tmp_path / "data"


def _run(data_dir, *args) -> int:
    return main(["--data-dir", str(data_dir), *args])


def test_seed_and_list(data_dir, capsys):
    assert _run(data_dir, "seed") == 0
    assert "Seeded 16 cards" in capsys.readouterr().out
    assert _run(data_dir, "cards", "--type", "Time") == 0
    out = capsys.readouterr().out
    assert "Morning" in out
    assert "Forest" not in out


def test_play_with_echo_provider(data_dir, capsys):
    _run(data_dir, "new-session", "Smoke Test")
    assert _run(data_dir, "play", "1", "I light a torch") == 0
    out = capsys.readouterr().out
    assert "I light a torch" in out
    assert "[turn 1" in out
    assert Storage(data_dir).get_last_turn_number(1) == 1


def test_activate_unknown_card_reports_error(data_dir, capsys):
    _run(data_dir, "new-session")
    assert _run(data_dir, "activate", "1", "99") == 1
    assert "Card 99 not found" in capsys.readouterr().err


def test_scripts_toggle_persists(data_dir, capsys):
    assert _run(data_dir, "scripts", "--disable", "quest-tracking", "--order", "auto-cards=50") == 0
    capsys.readouterr()
    _run(data_dir, "scripts")
    lines = capsys.readouterr().out.splitlines()
    assert lines[-1].split()[:3] == ["50", "on", "auto-cards"]
    assert any(line.split()[1:3] == ["off", "quest-tracking"] for line in lines)


def test_unknown_script_name_exits(data_dir):
    with pytest.raises(SystemExit):
        _run(data_dir, "scripts", "--enable", "ghost")


def test_prompt_preview(data_dir, capsys):
    _run(data_dir, "new-session")
    capsys.readouterr()
    assert _run(data_dir, "prompt", "1") == 0
    assert "Begin an open-ended adventure" in capsys.readouterr().out
