from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "extra": "ignore",
        "env_prefix": "",
        "case_sensitive": False,
    }

    # Generator (Groq, OpenAI-compatible chat completions)
    groq_api_key: str = ""
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "llama-3.1-8b-instant"
    groq_temperature: float = 0.7
    groq_max_tokens: int = 2000

    # Validators
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    google_ai_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    validator_temperature: float = 0.3
    validator_max_tokens: int = 2000
    validator_priority: str = "anthropic,gemini"  # first configured provider wins

    # Timeouts (seconds)
    generator_timeout_seconds: float = 10.0
    validator_timeout_seconds: float = 15.0
    recipe_pipeline_timeout_seconds: float = 20.0
    product_pipeline_timeout_seconds: float = 15.0
    price_lookup_timeout_seconds: float = 5.0

    # Cache
    cache_backend: str = "memory"  # "memory", "file", "none"
    cache_dir: str = ".cache/dualmodel"
    cache_ttl_seconds: int = 3600

    # Input limits
    max_inventory_size: int = 100
    max_shopping_list_size: int = 50
    max_item_length: int = 100

    # Price search collaborator
    price_search_url: str = ""
    price_search_top_n: int = 3

    # Diagnostics
    execution_log_capacity: int = 1000
    correction_length_threshold: int = 10
    stream_idle_timeout_seconds: float = 60.0

    # Per-client limit on the verified generation endpoints (slowapi syntax)
    rate_limit_enabled: bool = True
    verified_rate_limit: str = "10/minute"

    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_file: str = ""

    def validator_order(self) -> list[str]:
        """Validator provider names in preference order."""
        return [p.strip().lower() for p in self.validator_priority.split(",") if p.strip()]


settings = Settings()
