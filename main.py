"""
schoolsync entry point
Runs a short sync session against the configured student and configuration services.
"""

import asyncio
import os

from loguru import logger

from schoolsync import SyncClient
from schoolsync.services.auth import TokenPair
from schoolsync.services.errors import AuthError, SyncError


async def on_session_expired(error: AuthError) -> None:
    logger.warning(f"Session expired, please sign in again: {error}")


async def main() -> None:
    """Main entry point."""
    logger.info("Starting schoolsync session...")

    async with SyncClient(on_session_expired=on_session_expired) as client:
        try:
            username = os.getenv("SCHOOLSYNC_USERNAME")
            access_token = os.getenv("SCHOOLSYNC_ACCESS_TOKEN")
            if username:
                logger.info(f"Logging in as {username}...")
                await client.login(username, os.getenv("SCHOOLSYNC_PASSWORD", ""))
            elif access_token:
                client.sign_in(
                    TokenPair(access_token, os.getenv("SCHOOLSYNC_REFRESH_TOKEN", ""))
                )

            settings = await client.configuration.all_settings()
            for category, items in settings.items():
                logger.info(f"{category.value}: {len(items)} settings")

            page = await client.students.search({"page": 0})
            logger.info(
                f"Students: {page.total_elements} total, showing page "
                f"{page.page + 1}/{max(page.total_pages, 1)}"
            )
            for student in page.content:
                logger.info(f"  {student.student_id} {student.full_name} v{student.version}")

        except SyncError as e:
            logger.error(f"{e.kind.value}: {e}")
        finally:
            logger.info(f"Health: {client.get_health_status()}")

    logger.info("schoolsync session finished")


if __name__ == "__main__":
    asyncio.run(main())
