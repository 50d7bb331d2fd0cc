# src/tidewater/pipeline.py
"""Core orchestration logic for the tidewater pipeline."""

import asyncio
import logging
from typing import Callable, Optional

from aiobotocore.session import AioSession, get_session
from botocore.exceptions import BotoCoreError, ClientError

from tidewater.checkpoint import CheckpointStore
from tidewater.clients import kinesis_client, s3_client, stepfunctions_client
from tidewater.config import Config
from tidewater.lifecycle import LifecycleCoordinator
from tidewater.orchestration import TaskNotifier
from tidewater.processor import RecordProcessor
from tidewater.records import ObjectDescriptor
from tidewater.replicator import FileReplicator, ReplicationStats
from tidewater.scanner import BucketScanner, StreamProducer
from tidewater.stream import StreamWorker

logger: logging.Logger = logging.getLogger(__name__)


class ReplicationPipeline:
    """Wires the clients and components of one replication job."""

    def __init__(self, config: Config, shutdown_event: asyncio.Event) -> None:
        """
        Initializes the pipeline with the given configuration.

        Args:
            config (Config): The replication job.
            shutdown_event (asyncio.Event): Set when the process is asked to stop.
        """
        self._config: Config = config
        self._shutdown_event: asyncio.Event = shutdown_event
        self._session: AioSession = get_session()

    async def scan(
        self, on_object: Optional[Callable[[ObjectDescriptor], None]] = None
    ) -> int:
        """
        Publishes the source bucket's objects onto the stream.

        Args:
            on_object (Callable, optional): Called for every enumerated object.

        Returns:
            int: The number of objects enumerated.
        """
        app = self._config.app
        async with (
            s3_client(self._session, self._config.source, app) as source_client,
            kinesis_client(self._session, self._config.stream, app) as kinesis,
        ):
            producer: StreamProducer = StreamProducer(
                kinesis,
                self._config.stream.name,
                max_attempts=app.publish_max_attempts,
                backoff_s=app.retry_backoff_s,
            )
            scanner: BucketScanner = BucketScanner(
                self._config, source_client, producer
            )
            return await scanner.scan(on_object)

    async def replicate(self) -> ReplicationStats:
        """
        Consumes the stream and copies every described object.

        Runs until the terminal marker has been processed, the orchestrator
        cancels the job, or the process receives a shutdown signal. The job
        outcome is reported to the orchestrator at most once, and not at all
        when the run was interrupted or cancelled.

        Returns:
            ReplicationStats: Counters of the run.
        """
        logger.info(
            f"Starting replication 's3://{self._config.source.name}' "
            f"({self._config.source.region}) -> 's3://{self._config.target.name}' "
            f"({self._config.target.region})."
        )
        app = self._config.app
        stats: ReplicationStats = ReplicationStats()
        db_path = app.data_dir / f"{self._config.stream.application_name}.lmdb"

        with CheckpointStore(db_path, app.db_map_size_mb) as store:
            async with (
                s3_client(self._session, self._config.source, app) as source_client,
                s3_client(self._session, self._config.target, app) as target_client,
                kinesis_client(self._session, self._config.stream, app) as kinesis,
                stepfunctions_client(self._session, self._config.stream, app) as sfn,
            ):
                notifier: TaskNotifier = TaskNotifier(sfn, self._config.task_token)
                replicator: FileReplicator = FileReplicator(
                    self._config, source_client, target_client, notifier, stats
                )
                coordinator: LifecycleCoordinator = LifecycleCoordinator(
                    app.shutdown_timeout_s
                )

                def create_processor() -> RecordProcessor:
                    return RecordProcessor(
                        replicator, notifier, coordinator.request_shutdown, app
                    )

                worker: StreamWorker = StreamWorker(
                    kinesis, self._config.stream.name, store, create_processor, app
                )
                coordinator.bind_worker(worker)

                try:
                    interrupted: bool = await self._run_worker(worker, coordinator)
                except Exception as e:
                    await self._report_failure(notifier, e)
                    raise
                await coordinator.wait_idle()

                if interrupted:
                    # The rerun resumes from the checkpoints and reports then
                    logger.warning(f"Replication interrupted: {stats.as_payload()}")
                    return stats
                if notifier.expired:
                    logger.warning(
                        f"Replication cancelled by the orchestrator: "
                        f"{stats.as_payload()}"
                    )
                    return stats
                logger.info(f"Replication finished: {stats.as_payload()}")
                await notifier.report_success(stats.as_payload())
        return stats

    async def _run_worker(
        self, worker: StreamWorker, coordinator: LifecycleCoordinator
    ) -> bool:
        """
        Runs the worker, turning a shutdown signal into a graceful stop.

        Returns:
            bool: True if the worker was stopped by a shutdown signal.
        """
        worker_task: "asyncio.Task[None]" = asyncio.create_task(worker.run())
        shutdown_task: "asyncio.Task[bool]" = asyncio.create_task(
            self._shutdown_event.wait()
        )

        done, _ = await asyncio.wait(
            {worker_task, shutdown_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if shutdown_task in done and not worker_task.done():
            logger.warning("Shutdown signal received. Stopping the worker.")
            coordinator.request_shutdown()
            await worker_task
            return True

        shutdown_task.cancel()
        await asyncio.gather(shutdown_task, return_exceptions=True)
        await worker_task
        return False

    async def _report_failure(self, notifier: TaskNotifier, error: Exception) -> None:
        try:
            await notifier.report_failure(
                type(error).__name__, f"Replication worker failed: {error}"
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Unable to report job failure: {e}")
