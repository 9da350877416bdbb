from habits_api.settings import Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.persistence_backend == "memory"
        assert settings.sqlite_db_path == "./data/habits.db"
        assert settings.cors_allow_origins == ["*"]
        assert settings.enable_basic_auth is False
        assert settings.log_level == "INFO"
        assert settings.navigation_months_ahead == 3
        assert settings.orphan_log_path == "./orphaned-instances.log"
        assert settings.orphan_log_limit == 100

    def test_overrides(self):
        settings = Settings.from_env(
            {
                "PERSISTENCE_BACKEND": "SQLite",
                "SQLITE_DB_PATH": "/tmp/h.db",
                "CORS_ALLOW_ORIGINS": "http://a.test, http://b.test,",
                "ENABLE_BASIC_AUTH": "yes",
                "BASIC_AUTH_USERNAME": "admin",
                "BASIC_AUTH_PASSWORD": "secret",
                "LOG_LEVEL": "debug",
                "NAVIGATION_MONTHS_AHEAD": "6",
                "ORPHAN_LOG_LIMIT": "10",
            }
        )
        assert settings.persistence_backend == "sqlite"
        assert settings.sqlite_db_path == "/tmp/h.db"
        assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]
        assert settings.enable_basic_auth is True
        assert (settings.basic_auth_username, settings.basic_auth_password) == ("admin", "secret")
        assert settings.log_level == "DEBUG"
        assert settings.navigation_months_ahead == 6
        assert settings.orphan_log_limit == 10

    def test_invalid_values_fall_back(self):
        settings = Settings.from_env(
            {
                "PERSISTENCE_BACKEND": "firestore",
                "LOG_LEVEL": "chatty",
                "NAVIGATION_MONTHS_AHEAD": "-1",
                "ORPHAN_LOG_LIMIT": "0",
                "BASIC_AUTH_USERNAME": "ignored",
                "SQLITE_DB_PATH": "  ",
            }
        )
        assert settings.persistence_backend == "memory"
        assert settings.log_level == "INFO"
        assert settings.navigation_months_ahead == 3
        assert settings.orphan_log_limit == 100
        assert settings.basic_auth_username is None
        assert settings.sqlite_db_path == "./data/habits.db"
