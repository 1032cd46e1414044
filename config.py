"""
Home Bridge - Configuration
API keys, provider tiers, platform credentials and storage paths.
"""

import os
import json
from dotenv import load_dotenv

from constants import API_TIMEOUT as DEFAULT_API_TIMEOUT, DEFAULT_DASHBOARD_PORT, DEFAULT_METRICS_PORT

load_dotenv()


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _int(name: str, default: int = None):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        print(f"⚠️ {name} must be a number, got {value!r}")
        return default


# --- Identity ---

BOT_NAME = os.getenv('BOT_NAME', 'Wernstrom')

# --- Discord ---

DISCORD_ENABLE = _flag('DISCORD_ENABLE', True)
DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
DISCORD_ADMIN_ID = _int('DISCORD_ADMIN_ID')

# --- Matrix ---

MATRIX_ENABLE = _flag('MATRIX_ENABLE', False)
MATRIX_HOMESERVER = os.getenv('MATRIX_HOMESERVER', 'https://matrix.org').rstrip('/')
MATRIX_USER_ID = os.getenv('MATRIX_USER_ID')
MATRIX_PASSWORD = os.getenv('MATRIX_PASSWORD')
MATRIX_DEVICE_NAME = os.getenv('MATRIX_DEVICE_NAME', 'home-bridge')

# --- Language model ---

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o')

# --- Data sources ---

OPENWEATHERMAP_API_KEY = os.getenv('OPENWEATHERMAP_API_KEY')
WEATHER_LANGUAGE = os.getenv('WEATHER_LANGUAGE', 'en')
HA_API_URL = os.getenv('HA_API_URL')
HA_TOKEN = os.getenv('HA_TOKEN')
VEHICLE_ENTITIES = [
    e.strip() for e in os.getenv(
        'VEHICLE_ENTITIES',
        'sensor.car_state_of_charge,sensor.car_range,binary_sensor.car_charging,device_tracker.car_position'
    ).split(',') if e.strip()
]

# --- Storage ---

DATA_DIR = "bot_data"
SQLITE_DB_PATH = os.getenv('SQLITE_DB_PATH', os.path.join(DATA_DIR, "home_bridge.db"))
PROMPTS_DIR = "prompts"

# --- Operator surfaces ---

DASHBOARD_ENABLE = _flag('DASHBOARD_ENABLE', True)
DASHBOARD_HOST = os.getenv('DASHBOARD_HOST', '127.0.0.1')
DASHBOARD_PORT = _int('DASHBOARD_PORT', DEFAULT_DASHBOARD_PORT)
METRICS_ENABLE = _flag('METRICS_ENABLE', False)
METRICS_PORT = _int('METRICS_PORT', DEFAULT_METRICS_PORT)


# --- Provider Configuration ---

def load_providers(path: str = None) -> tuple[dict, int]:
    """Load provider tiers from providers.json or fall back to OpenAI.

    Returns:
        tuple: (providers_dict, timeout_seconds), tiers ordered by priority
    """
    config_path = path or os.path.join(os.path.dirname(os.path.abspath(__file__)), "providers.json")
    timeout = DEFAULT_API_TIMEOUT

    if os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            print(f"⚠️ Invalid providers.json: {e}")
            return {}, timeout

        providers = {}
        for i, p in enumerate(data.get("providers", [])):
            tier = ["primary", "secondary", "fallback"][i] if i < 3 else f"tier_{i}"

            if not p.get("url"):
                print(f"⚠️ Provider {i+1} missing 'url', skipping")
                continue

            # Keyless providers (local servers) still need a non-empty key for the client
            key_env = p.get("key_env", "")
            key = os.getenv(key_env, "") if key_env else "not-needed"

            providers[tier] = {
                "name": p.get("name", f"Provider {i+1}"),
                "url": p.get("url"),
                "key": key,
                "model": p.get("model", OPENAI_MODEL),
            }

        if not providers:
            print("⚠️ providers.json has no usable providers defined")
        return providers, data.get("timeout", timeout)

    return {
        "primary": {
            "name": "OpenAI",
            "url": "https://api.openai.com/v1",
            "key": OPENAI_API_KEY,
            "model": OPENAI_MODEL,
        }
    }, timeout


PROVIDERS, PROVIDER_TIMEOUT = load_providers()
