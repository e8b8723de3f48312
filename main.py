"""
Realtime client demo
Streams RTDS crypto prices (and the CLOB user channel when credentials are set) to the log
"""

import asyncio
import logging

from config.settings import settings
from realtime import ClientEvent, ClobAuth, ClobUserClient, RtdsClient


logger = logging.getLogger(__name__)


def log_price(message: dict) -> None:
    payload = message.get("payload") or {}
    logger.info(f"{payload.get('symbol')}: {payload.get('value')}")


async def run() -> None:
    options = settings.connection_options()

    rtds = RtdsClient(settings.rtds_url, **options)
    rtds.on(ClientEvent.STATE_CHANGE, lambda event: logger.info(
        f"RTDS state: {event.previous_state.value} -> {event.state.value}"
    ))
    rtds.on(ClientEvent.ERROR, lambda event: logger.warning(f"RTDS error: {event.message}"))
    rtds.on_crypto_price(log_price)

    symbols = [s.strip() for s in settings.demo_symbols.split(",") if s.strip()]
    rtds.subscribe_crypto_prices(symbols or None)

    user = None
    if settings.has_clob_credentials:
        auth = ClobAuth(settings.clob_api_key, settings.clob_secret, settings.clob_passphrase)
        user = ClobUserClient(auth, settings.clob_user_url, **options)
        user.on_user_message(lambda event: logger.info(f"User event: {event}"))

    try:
        await rtds.connect()
        if user is not None:
            await user.connect()
        # Runs until cancelled; reconnection is handled by the clients
        await asyncio.Event().wait()
    finally:
        rtds.disconnect()
        if user is not None:
            user.disconnect()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"{settings.app_name} starting")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
