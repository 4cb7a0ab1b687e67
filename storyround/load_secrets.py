import os
from dotenv import load_dotenv

from storyround.errors import StartupError
from storyround.models.config_models import RoundConfig

load_dotenv()

user = os.getenv("DB_USER")
password = os.getenv("DB_PASSWORD")
host = os.getenv("DB_HOST")
port = os.getenv("DB_PORT")
db_name = os.getenv("DB_NAME")
sqlite_path = os.getenv("SQLITE_PATH")

redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
wallet_service_url = os.getenv("WALLET_SERVICE_URL")
market_provider_urls = [
    url.strip() for url in os.getenv("MARKET_PROVIDER_URLS", "").split(",") if url.strip()
]
treasury_account = os.getenv("TREASURY_ACCOUNT")
fee_wallet = os.getenv("FEE_WALLET")
relay_username = os.getenv("RELAY_USERNAME")
relay_password = os.getenv("RELAY_PASSWORD")
main_channel = os.getenv("MAIN_CHANNEL", "gofundmetoken")
submissions_channel = os.getenv("SUBMISSIONS_CHANNEL", "gofundme_submissions")
payment_redirect_url = os.getenv("PAYMENT_REDIRECT_URL")


def require_secrets() -> None:
    """Refuse to start without the credentials the round loop cannot run without."""
    missing = [
        name
        for name, value in (
            ("WALLET_SERVICE_URL", wallet_service_url),
            ("MARKET_PROVIDER_URLS", market_provider_urls),
            ("TREASURY_ACCOUNT", treasury_account),
            ("FEE_WALLET", fee_wallet),
        )
        if not value
    ]
    if missing:
        raise StartupError(f"Missing required configuration: {', '.join(missing)}")


def load_round_config() -> RoundConfig:
    """Build the round config, letting upper-case env vars override scalar fields."""
    overrides = {}
    for name, field in RoundConfig.model_fields.items():
        if field.annotation not in (int, float):
            continue
        value = os.getenv(name.upper())
        if value is not None:
            overrides[name] = value
    return RoundConfig(**overrides)


if __name__ == "__main__":
    print(wallet_service_url, market_provider_urls, treasury_account, fee_wallet)
    print(load_round_config().model_dump_json(indent=2))
