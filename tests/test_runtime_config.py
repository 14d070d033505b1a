from govintel.core.config import Settings
from govintel.services.runtime_config import build_runtime_config


def test_runtime_config_reads_system_config_values() -> None:
    settings = Settings(database_url=None)
    config = build_runtime_config(
        {
            "scoring.llm_trigger_score": 60,
            "scoring.llm_max_adjustment": -15,
            "pipeline.retry_attempts": 5,
            "features.llm_analysis": "false",
            "features.document_download": False,
            "notifications.digest_min_score": 80,
            "scoring.rules": {"naics_primary_points": 35},
        },
        settings,
    )

    assert config.llm_trigger_score == 60.0
    assert config.llm_max_adjustment == 15.0
    assert config.max_attempts == 5
    assert config.llm_analysis_enabled is False
    assert config.document_download_enabled is False
    assert config.digest_min_score == 80.0
    assert config.scoring_rules.naics_primary_points == 35.0


def test_runtime_config_falls_back_to_settings_and_versions_snapshot() -> None:
    settings = Settings(database_url=None, llm_trigger_score=55, job_max_attempts=4)
    empty = build_runtime_config({}, settings)
    malformed = build_runtime_config({"scoring.llm_trigger_score": "high", "pipeline.retry_attempts": True}, settings)

    assert empty.llm_trigger_score == 55.0
    assert empty.max_attempts == 4
    assert empty.llm_analysis_enabled is True
    assert malformed.llm_trigger_score == 55.0
    assert malformed.max_attempts == 4
    assert empty.version != malformed.version
    assert build_runtime_config({}, settings).version == empty.version
