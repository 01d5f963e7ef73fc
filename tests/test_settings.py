from audit_runner.settings import RunnerSettings


def test_defaults_match_documented_limits():
    settings = RunnerSettings.from_env({})
    assert settings.per_file_timeout_s == 90
    assert settings.synthesis_timeout_s == 90
    assert settings.max_batch_files == 5
    assert settings.snippet_max_chars == 25000
    assert settings.max_eta_seconds == 14400
    assert settings.llm_max_retries == 2
    assert settings.poll_interval_ms == 3000


def test_invalid_values_fall_back_or_clamp():
    settings = RunnerSettings.from_env(
        {
            "AUDIT_PER_FILE_TIMEOUT_S": "soon",
            "AUDIT_MAX_BATCH_FILES": "3",
            "AUDIT_DEFAULT_BATCH_FILES": "10",
            "AUDIT_LLM_MAX_RETRIES": "-4",
            "AUDIT_SECONDARY_ANALYSIS_URL": " http://analysis:8000/ ",
        }
    )
    assert settings.per_file_timeout_s == 90
    assert settings.max_batch_files == 3
    assert settings.default_batch_files == 3
    assert settings.llm_max_retries == 0
    assert settings.secondary_analysis_url == "http://analysis:8000"


def test_clamp_batch_size():
    settings = RunnerSettings(max_batch_files=5, default_batch_files=4)
    assert settings.clamp_batch_size(None) == 4
    assert settings.clamp_batch_size(0) == 1
    assert settings.clamp_batch_size(50) == 5


def test_stale_threshold_covers_a_full_batch():
    settings = RunnerSettings(per_file_timeout_s=90, max_batch_files=5, stale_grace_s=30)
    assert settings.stale_processing_after_s == 480
