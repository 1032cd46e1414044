"""
Home Bridge - Main Entry Point
Wires the shared services and runs one supervised bridge per enabled platform.
"""

import asyncio
import logging
import os
import signal
from typing import List, Tuple

# Suppress verbose logging from all libraries
logging.getLogger('discord').setLevel(logging.WARNING)
logging.getLogger('discord.http').setLevel(logging.WARNING)
logging.getLogger('discord.gateway').setLevel(logging.WARNING)
logging.getLogger('aiohttp').setLevel(logging.WARNING)
logging.getLogger('httpx').setLevel(logging.WARNING)
logging.getLogger('httpcore').setLevel(logging.WARNING)
logging.getLogger('openai').setLevel(logging.WARNING)
logging.getLogger('openai._base_client').setLevel(logging.WARNING)

import config
import logger as log
from ambient import ReactionPolicy, StatusRotator
from bridge import ConversationBridge
from constants import MAX_OUTPUT_TOKENS, MAX_TOOL_DEPTH, RATE_LIMIT_CAPACITY, RATE_LIMIT_INTERVAL
from history import HistoryStore
from orchestrator import ToolOrchestrator
from persona import PromptManager
from prometheus_metrics import metrics_manager
from providers import AIProviderManager
from rate_limiter import LeakyBucketRateLimiter
from supervisor import ConnectionState, GatewaySupervisor
from tools import ToolService


def build_platforms(orchestrator: ToolOrchestrator, store: HistoryStore,
                    prompts: PromptManager) -> List[Tuple[object, ConversationBridge]]:
    """Create a platform adapter and its bridge for every enabled platform."""
    platforms = []

    if config.DISCORD_ENABLE:
        from discord_gateway import DiscordPlatform

        platform = DiscordPlatform(config.DISCORD_TOKEN, admin_id=config.DISCORD_ADMIN_ID)
        bridge = ConversationBridge(platform, store, orchestrator, prompts, reactions=ReactionPolicy())
        platform.attach(bridge, status_rotator=StatusRotator(orchestrator, store, prompts))
        platforms.append((platform, bridge))

    if config.MATRIX_ENABLE:
        from matrix_gateway import MatrixPlatform

        platform = MatrixPlatform(
            config.MATRIX_HOMESERVER, config.MATRIX_USER_ID, config.MATRIX_PASSWORD,
            device_name=config.MATRIX_DEVICE_NAME,
        )
        bridge = ConversationBridge(platform, store, orchestrator, prompts, reactions=ReactionPolicy())
        platform.attach(bridge)
        platforms.append((platform, bridge))

    return platforms


def _running_callback(bridge: ConversationBridge):
    def on_state_change(state: ConnectionState):
        bridge.set_running(state is ConnectionState.CONNECTED)
    return on_state_change


async def run_bridges():
    """Run all enabled bridges until a signal arrives or every gateway gives up."""
    os.makedirs(config.DATA_DIR, exist_ok=True)
    store = HistoryStore(config.SQLITE_DB_PATH)
    tools = ToolService(
        openweathermap_api_key=config.OPENWEATHERMAP_API_KEY,
        weather_language=config.WEATHER_LANGUAGE,
        ha_url=config.HA_API_URL,
        ha_token=config.HA_TOKEN,
        vehicle_entities=config.VEHICLE_ENTITIES,
    )
    orchestrator = ToolOrchestrator(
        AIProviderManager(config.PROVIDERS, config.PROVIDER_TIMEOUT),
        tools,
        LeakyBucketRateLimiter(RATE_LIMIT_CAPACITY, RATE_LIMIT_INTERVAL),
        max_depth=MAX_TOOL_DEPTH,
        max_output_tokens=MAX_OUTPUT_TOKENS,
    )
    prompts = PromptManager(config.BOT_NAME, config.PROMPTS_DIR)

    platforms = build_platforms(orchestrator, store, prompts)
    if not platforms:
        log.error("No platform enabled!")
        store.close()
        return

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    supervisors = [
        GatewaySupervisor(platform.name, platform.connect, shutdown=shutdown,
                          on_state_change=_running_callback(bridge))
        for platform, bridge in platforms
    ]
    bridges = [bridge for _, bridge in platforms]

    log.startup(f"Starting {len(platforms)} bridge(s) as {config.BOT_NAME}...")
    log.divider()

    if config.METRICS_ENABLE:
        metrics_manager.start_metrics_server(config.METRICS_PORT)

    if config.DASHBOARD_ENABLE:
        try:
            from dashboard import start_dashboard
            start_dashboard(bridges, loop, host=config.DASHBOARD_HOST, port=config.DASHBOARD_PORT)
            log.online(f"Operator API running at http://{config.DASHBOARD_HOST}:{config.DASHBOARD_PORT}")
        except Exception as e:
            log.warn(f"Operator API failed to start: {e}")

    try:
        await asyncio.gather(*[s.run() for s in supervisors])
    finally:
        log.info("Shutting down...")
        for bridge in bridges:
            bridge.queue.cancel_all()
        await tools.close()
        store.close()
        log.offline("Home Bridge stopped")


# --- Entry Point ---

def cli():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Run startup validation first
    from startup import validate_startup

    if not validate_startup(interactive=True):
        log.error("Startup validation failed. Please fix the issues above.")
        import sys
        sys.exit(1)

    log.divider()
    try:
        asyncio.run(run_bridges())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
