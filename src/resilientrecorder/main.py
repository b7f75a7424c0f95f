"""
Resilient Stream Recorder - entry point.

Loads configuration, records the configured stream for the configured
duration and shuts down cleanly on SIGINT/SIGTERM.
"""

import asyncio
import signal
import sys
from typing import Optional

from .config import load_config
from .errors import EmptyInput, MergeFailed
from .logger import get_logger, setup_logging
from .orchestrator import Phase, RecordingOrchestrator


async def report_status(orchestrator: RecordingOrchestrator, interval: float) -> None:
    """Log a one-line status snapshot every *interval* seconds."""
    logger = get_logger('status')
    while True:
        await asyncio.sleep(interval)
        status = orchestrator.get_status()
        stream = "online" if status.stream_available else "offline"
        logger.info(
            f"{status.phase.value}: {status.progress_percent}% "
            f"({status.recorded_seconds}/{status.target_seconds}s) | "
            f"stream {stream} | segments: {status.segments_recorded} | "
            f"failed checks: {status.consecutive_failures}"
        )
        if status.phase in (Phase.DONE, Phase.STOPPED, Phase.FAILED):
            return


async def main(config_path: str = "config.yaml") -> int:
    """Main entry point. Returns a process exit code."""
    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 2
    except Exception as e:
        print(f"Configuration error: {e}")
        return 2

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )
    logger = get_logger('app')
    logger.info(f"Recording {config.stream.url} into {config.recording.output_dir}")

    orchestrator = RecordingOrchestrator.from_config(config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    record_task = asyncio.create_task(orchestrator.start_recording(
        config.recording.duration_minutes,
        config.recording.final_name or None
    ))
    stop_task = asyncio.create_task(stop_event.wait())
    status_task = None
    if config.logging.status_interval > 0:
        status_task = asyncio.create_task(report_status(orchestrator, config.logging.status_interval))

    try:
        await asyncio.wait({record_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        if stop_task.done():
            logger.info("Shutdown signal received...")
            await orchestrator.stop()

        try:
            final_path = await record_task
        except EmptyInput as e:
            logger.error(f"Nothing was recorded: {e}")
            return 1
        except MergeFailed as e:
            logger.error(f"Merge failed: {e}")
            return 1

        if final_path is None:
            logger.info("Recording stopped before completion. Segments were kept.")
            return 130
        logger.info(f"Recording completed: {final_path}")
        return 0

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        for task in (stop_task, status_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


def run(argv: Optional[list] = None) -> None:
    """Console script wrapper: ``resilient-recorder [config.yaml]``."""
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else "config.yaml"
    raise SystemExit(asyncio.run(main(config_path)))


if __name__ == '__main__':
    run()
