"""Report an item's outcome and its artifacts back to the queue service."""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from workitem_agent.client.base import QueueServiceClient, QueueServiceError
from workitem_agent.worker.models import (
    ArtifactDescriptor,
    ExecutionOutcome,
    Fatal,
    ReconcileResult,
    Retry,
    Success,
    WorkItem,
    WorkItemState,
)

logger = logging.getLogger(__name__)


def apply_outcome(item: WorkItem, outcome: ExecutionOutcome) -> WorkItem:
    """Return the copy of ``item`` that reflects ``outcome``."""

    if isinstance(outcome, Success):
        return replace(
            item,
            state=WorkItemState.SUCCESSFUL,
            errortype=None,
            errormessage=None,
            errorsource=None,
        )
    if isinstance(outcome, Retry):
        state = WorkItemState.RETRY
    elif isinstance(outcome, Fatal):
        state = WorkItemState.FATAL
    else:
        raise TypeError(f"Unsupported execution outcome: {outcome!r}")
    return replace(
        item,
        state=state,
        errortype=outcome.errortype,
        errormessage=outcome.message,
        errorsource=outcome.source,
    )


class ResultReconciler:
    """Maps execution outcome plus new files onto a single update call."""

    def __init__(
        self,
        *,
        client: QueueServiceClient,
        workdir: Path,
        compress: bool = False,
    ) -> None:
        self.client = client
        self.workdir = workdir
        self.compress = compress

    def reconcile(
        self,
        item: WorkItem,
        outcome: ExecutionOutcome,
        new_artifacts: Sequence[str],
    ) -> ReconcileResult:
        updated_item = apply_outcome(item, outcome)
        if updated_item.state == WorkItemState.SUCCESSFUL:
            logger.info("Workitem processed successfully")
        else:
            logger.info(
                "Workitem processing failed: state=%s %s",
                updated_item.state.value,
                updated_item.errormessage,
            )

        attachments: list[ArtifactDescriptor] = []
        failed_attachments: list[str] = []
        for filename in new_artifacts:
            if self._is_attachable(filename):
                attachments.append(ArtifactDescriptor(filename=filename, compressed=self.compress))
            else:
                logger.warning("Skipping attachment %s: no longer a regular file", filename)
                failed_attachments.append(filename)
        if attachments:
            logger.info("Found %d new files to attach", len(attachments))

        result = ReconcileResult(
            item=updated_item,
            attachments=attachments,
            failed_attachments=failed_attachments,
        )
        try:
            dropped = self.client.update_workitem(
                updated_item,
                attachments,
                base_dir=self.workdir,
            )
        except QueueServiceError as error:
            result.error = str(error) or error.__class__.__name__
            logger.error("Failed to update workitem: %s", result.error)
            return result

        if dropped:
            logger.warning("Queue service dropped unreadable attachments: %s", ", ".join(dropped))
            result.attachments = [a for a in attachments if a.remote_id is not None]
            result.failed_attachments.extend(dropped)
        result.updated = True
        logger.info("Workitem updated successfully")
        return result

    def _is_attachable(self, filename: str) -> bool:
        path = self.workdir / filename
        try:
            mode = path.lstat().st_mode
        except OSError:
            return False
        return stat.S_ISREG(mode) and os.access(path, os.R_OK)
