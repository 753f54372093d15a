import azure.functions as func

from src.shared.logging_utils import error as log_error, info as log_info
from src.shared.runtime import get_runtime


bp = func.Blueprint()


@bp.function_name(name="q_account_deleted")
@bp.queue_trigger(
    arg_name="msg",
    queue_name="%ACCOUNT_DELETED_QUEUE%",
    connection="AzureWebJobsStorage",
)
async def q_account_deleted(msg: func.QueueMessage) -> None:
    """Purge a deleted account's posts.

    Raising hands the message back to the queue; after maxDequeueCount
    attempts the host moves it to the poison queue.
    """
    message_id = getattr(msg, "id", None)
    runtime = get_runtime()
    log_info(
        message_id,
        "queue:dequeued",
        queue=runtime.settings.account_deleted_queue,
        dequeueCount=getattr(msg, "dequeue_count", None),
    )
    try:
        report = await runtime.account_deleted.consume(msg.get_body(), trace_id=message_id)
    except Exception as exc:
        log_error(message_id, "queue:account_deleted_failed", exc_info=True, error=str(exc))
        raise
    log_info(message_id, "queue:account_deleted_done", **report.model_dump(mode="json"))
