from pydantic import BaseModel

from shared.contracts.dto.worker import WorkerRecord

WORKER_CHANGES_STREAM = "vp:worker:changes"


class RecordChange(BaseModel):
    """One entry of the worker-record change feed.

    item_id is the stream entry id, used to report selective redelivery.
    """

    item_id: str
    worker_id: str
    old: WorkerRecord | None = None
    new: WorkerRecord
