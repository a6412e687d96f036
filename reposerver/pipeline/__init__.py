"""External command pipeline: hooks and the indexer.

Example:
    >>> from reposerver.pipeline import HookContext, run_hook
    >>> result = await run_hook(hook, "pre", 1, context, shell="sh")
    >>> print(result.stdout)
"""

from .hooks import (
    HookContext,
    HookError,
    HookFailedError,
    HookResult,
    HookTimeoutError,
    run_hook,
)
from .indexer import IndexerError, IndexerResult, build_indexer_command, run_indexer
from .process import ProcessResult, ProcessTimeoutError, run_process, summarize_output

__all__ = [
    # Hooks
    "HookContext",
    "HookResult",
    "HookError",
    "HookTimeoutError",
    "HookFailedError",
    "run_hook",
    # Indexer
    "IndexerResult",
    "IndexerError",
    "build_indexer_command",
    "run_indexer",
    # Processes
    "ProcessResult",
    "ProcessTimeoutError",
    "run_process",
    "summarize_output",
]
