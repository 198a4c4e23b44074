from collospot.core.config import Settings, get_settings, parse_cors_origins


def test_parse_cors_origins_csv():
    value = "http://localhost:5173, http://localhost:3000"
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "http://localhost:3000",
    ]


def test_parse_cors_origins_json_list():
    value = '["http://localhost:5173", "https://portal.collospot.example"]'
    assert parse_cors_origins(value) == [
        "http://localhost:5173",
        "https://portal.collospot.example",
    ]


def test_parse_cors_origins_deduplicates():
    value = "http://localhost:5173,http://localhost:5173"
    assert parse_cors_origins(value) == ["http://localhost:5173"]


def test_mpesa_base_url_follows_environment():
    settings = get_settings()
    sandbox = settings.model_copy(update={"mpesa_environment": "sandbox", "mpesa_base_url": None})
    production = settings.model_copy(update={"mpesa_environment": "Production", "mpesa_base_url": None})
    override = settings.model_copy(update={"mpesa_base_url": "https://proxy.internal/"})

    assert sandbox.resolved_mpesa_base_url == "https://sandbox.safaricom.co.ke"
    assert production.resolved_mpesa_base_url == "https://api.safaricom.co.ke"
    assert override.resolved_mpesa_base_url == "https://proxy.internal"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("SESSION_SWEEP_INTERVAL_SECONDS", "60")
    monkeypatch.setenv("PAYMENT_ABANDON_MINUTES", "5")

    settings = Settings()

    assert settings.session_sweep_interval_seconds == 60
    assert settings.payment_abandon_minutes == 5
    assert settings.mikrotik_test_mode is True
