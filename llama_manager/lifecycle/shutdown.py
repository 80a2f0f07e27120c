"""
Application Shutdown Module

This module handles graceful FastAPI application shutdown.
All components are stopped in reverse order of their startup.

Shutdown Order:
    1. Signal shutdown event (new requests get 503)
    2. Cancel all background tasks (auto-start)
    3. Wait for active requests (with timeout)
    4. Stop the engine
    5. Close HTTP client

Usage:
    from llama_manager.lifecycle.shutdown import shutdown_handler

    @app.on_event("shutdown")
    async def on_shutdown():
        await shutdown_handler()
"""

import asyncio
import logging
import time

from .dependencies import get_container


logger = logging.getLogger(__name__)


# Timeout constants
TASK_CANCEL_TIMEOUT = 2.0
REQUEST_DRAIN_TIMEOUT = 10
ENGINE_STOP_TIMEOUT = 20.0
HTTP_CLIENT_TIMEOUT = 5.0


async def shutdown_handler() -> None:
    """
    Gracefully shutdown all application components.

    This function is called by FastAPI's on_event("shutdown") handler.
    """
    container = get_container()

    logger.info("Application shutdown initiated")

    # Step 1: Signal shutdown event
    container.shutdown_event.set()

    # Step 2: Cancel background tasks
    await _cancel_background_tasks(container)

    # Step 3: Wait for active requests to drain
    await _wait_for_active_requests(container)

    # Step 4: Stop the engine
    await _stop_engine(container)

    # Step 5: Close HTTP client
    await _close_http_client(container)

    logger.info("Application shutdown complete")


async def _cancel_background_tasks(container) -> None:
    """Cancel all background tasks."""
    task_count = len(container.background_tasks)
    if not task_count:
        return

    logger.info(f"Cancelling {task_count} background tasks")

    for task in container.background_tasks:
        if task.done():
            continue

        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=TASK_CANCEL_TIMEOUT)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        except Exception as e:
            logger.warning(f"Error cancelling task: {e}")

    container.background_tasks.clear()


async def _wait_for_active_requests(container) -> None:
    """Wait for active requests to complete with timeout."""
    start_time = time.time()

    while container.active_requests > 0:
        elapsed = time.time() - start_time
        if elapsed >= REQUEST_DRAIN_TIMEOUT:
            logger.warning(
                f"Shutdown timeout reached. "
                f"Force closing with {container.active_requests} "
                f"requests still active."
            )
            break

        logger.info(
            f"Waiting for {container.active_requests} "
            f"active requests to complete..."
        )
        await asyncio.sleep(1)


async def _stop_engine(container) -> None:
    """Stop llama-server."""
    if not container.engine:
        return

    logger.info("Stopping llama-server")

    try:
        await asyncio.wait_for(container.engine.stop(), timeout=ENGINE_STOP_TIMEOUT)
        logger.info("llama-server stopped")
    except asyncio.TimeoutError:
        logger.error("Timeout stopping llama-server. Force killing...")
        process = container.engine.process
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
    except Exception as e:
        logger.error(f"Error stopping llama-server: {e}")


async def _close_http_client(container) -> None:
    """Close the HTTP client."""
    if not container.http_client:
        return

    logger.info("Closing HTTP client")

    try:
        await asyncio.wait_for(
            container.http_client.aclose(),
            timeout=HTTP_CLIENT_TIMEOUT
        )
        logger.info("HTTP client closed")
    except asyncio.TimeoutError:
        logger.warning("HTTP client close timeout")
    except Exception as e:
        logger.warning(f"Error closing HTTP client: {e}")
