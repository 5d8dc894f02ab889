from gmassist.backend.config import load_settings


def test_load_settings_reads_expected_env(monkeypatch) -> None:
    monkeypatch.setenv("GMASSIST_DATABASE_URL", "postgresql://local")
    monkeypatch.setenv("GMASSIST_DATA_DIR", "/tmp/gma")
    monkeypatch.setenv("GMASSIST_DEBOUNCE_MS", "50")
    monkeypatch.setenv("GMASSIST_NAMESPACE", "test")
    monkeypatch.setenv("GMASSIST_HOST", "localhost")
    monkeypatch.setenv("GMASSIST_PORT", "9000")
    monkeypatch.setenv("GMASSIST_LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.database_url == "postgresql://local"
    assert settings.data_dir == "/tmp/gma"
    assert settings.debounce_ms == 50
    assert settings.namespace == "test"
    assert settings.host == "localhost"
    assert settings.port == 9000
    assert settings.log_level == "DEBUG"


def test_load_settings_applies_defaults(monkeypatch) -> None:
    for name in (
        "GMASSIST_DATABASE_URL",
        "GMASSIST_DATA_DIR",
        "GMASSIST_DEBOUNCE_MS",
        "GMASSIST_NAMESPACE",
        "GMASSIST_HOST",
        "GMASSIST_PORT",
        "GMASSIST_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.database_url is None
    assert settings.data_dir is None
    assert settings.debounce_ms == 300
    assert settings.namespace == "gma"
    assert settings.host == "127.0.0.1"
    assert settings.port == 8000
    assert settings.log_level == "INFO"
