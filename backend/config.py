from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    openai_api_key: str | None = None
    elevenlabs_api_key: str | None = None
    elevenlabs_voice_id: str = "21m00Tcm4TlvDq8ikWAM"  # "Rachel"
    classifier_model: str = "gpt-4o-mini"
    transcribe_model: str = "gpt-4o-mini-transcribe"
    asr_model_size: str = "small"  # local faster-whisper: "tiny", "small", "medium"
    transcriber: str = "auto"  # "auto" | "openai" | "whisper" | "off"

    sample_rate: int = 16000
    default_lang: str = "auto"  # "auto" or en/es/fr/de
    high_risk_threshold: int = 50

    # Alert responses
    discreet_alert: bool = True
    voice_coach: bool = True
    auto_mute_mic: bool = True
    auto_hangup: bool = True

    # Timing and windows
    classify_interval_s: float = 1.8
    alert_cooldown_s: float = 3.0
    hangup_delay_s: float = 0.5
    remote_chunk_s: float = 4.0
    local_window_chars: int = 1200
    classify_window_chars: int = 1600

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

settings = Settings()
