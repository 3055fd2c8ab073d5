import pytest

from phoneguard_shared import env_bool, env_int, env_list
from phoneguard_shared.env_loader import load_env_file


def test_env_bool(monkeypatch):
    monkeypatch.setenv("FLAG", "yes")
    assert env_bool("FLAG") is True
    monkeypatch.setenv("FLAG", "off")
    assert env_bool("FLAG", default=True) is False
    monkeypatch.delenv("FLAG")
    assert env_bool("FLAG", default=True) is True
    monkeypatch.setenv("FLAG", "maybe")
    with pytest.raises(ValueError):
        env_bool("FLAG")


def test_env_int_clamps_to_minimum(monkeypatch):
    monkeypatch.setenv("LIMIT", "-3")
    assert env_int("LIMIT", default=5, minimum=0) == 0
    monkeypatch.setenv("LIMIT", "12")
    assert env_int("LIMIT", default=5) == 12
    monkeypatch.setenv("LIMIT", "twelve")
    with pytest.raises(ValueError):
        env_int("LIMIT", default=5)


def test_env_list(monkeypatch):
    monkeypatch.setenv("ORIGINS", "https://a.example, ,https://b.example")
    assert env_list("ORIGINS") == ["https://a.example", "https://b.example"]
    monkeypatch.delenv("ORIGINS")
    assert env_list("ORIGINS", default=["*"]) == ["*"]


def test_load_env_file_never_overrides(tmp_path, monkeypatch):
    path = tmp_path / "app.env"
    path.write_text("# comment\nexport NEW_KEY='value'\nEXISTING=from-file\n", encoding="utf-8")
    monkeypatch.setenv("EXISTING", "from-env")
    monkeypatch.delenv("NEW_KEY", raising=False)
    assert load_env_file(str(path)) == 1
    import os

    assert os.environ["NEW_KEY"] == "value"
    assert os.environ["EXISTING"] == "from-env"
    monkeypatch.delenv("NEW_KEY")
