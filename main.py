"""
Antidote client entry point.

Fetches the signed-in user's top tracks twice: the second call is served
from the response cache.
"""

import asyncio

from loguru import logger

from antidote.api import AntidoteApi
from antidote.services import ApiError, create_api_client
from antidote.settings import global_settings
from antidote.utils import configure_logging


async def main() -> None:
    configure_logging(global_settings.log_level)
    logger.info("Starting Antidote client...")

    client = await create_api_client(global_settings)
    try:
        api = AntidoteApi(client)
        for _ in range(2):
            top = await api.get_top_tracks()
            logger.info(f"Top tracks: {len(top.get('tracks', []))} items")

        logger.info(f"Pipeline status: {client.get_health_status()}")

    except ApiError as e:
        if e.is_auth_error:
            logger.error(f"Reconnect Spotify to continue: {e.user_message}")
        else:
            logger.error(f"Request failed [{e.code}]: {e.message}")
    finally:
        await client.close()
        logger.info("Antidote client stopped")


if __name__ == "__main__":
    asyncio.run(main())
