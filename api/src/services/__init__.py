from api.src.services.github import (
    verify_signature,
    clone_repository,
    resolve_head,
    fetch_pipeline_config,
    parse_pull_request_payload,
    cleanup_repo,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    PipelineConfigError,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    get_run_status,
    get_queue_length,
    request_cancel,
    list_pending_promotions,
    approve_promotion,
)
from api.src.services.triggers import (
    pull_request_trigger,
    validate_dispatch,
    dispatch_trigger,
    DispatchError,
)

__all__ = [
    "verify_signature",
    "clone_repository",
    "resolve_head",
    "fetch_pipeline_config",
    "parse_pull_request_payload",
    "cleanup_repo",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "PipelineConfigError",
    "enqueue_pipeline_run",
    "get_run_status",
    "get_queue_length",
    "request_cancel",
    "list_pending_promotions",
    "approve_promotion",
    "pull_request_trigger",
    "validate_dispatch",
    "dispatch_trigger",
    "DispatchError",
]
