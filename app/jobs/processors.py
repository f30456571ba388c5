"""Work item processors, keyed by SEO issue type.

A processor attempts the remediation of one affected item and reports an
ItemOutcome. Raising an ordinary exception counts as a failure of that item
only; raising JobAbortedError fails the whole job.
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from app.db.supabase_client import get_supabase
from app.jobs.models import AffectedItem, ItemOutcome

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProcessorContext:
    """Job-wide values a processor may need, threaded through by the runner."""
    job_id: str
    shop_id: Optional[str]
    diagnostic_id: Optional[str]
    issue_type: str


ProcessorResult = Union[ItemOutcome, Awaitable[ItemOutcome]]
Processor = Callable[[AffectedItem, ProcessorContext], ProcessorResult]


async def call_processor(
    processor: Processor, item: AffectedItem, context: ProcessorContext
) -> ItemOutcome:
    """Invoke a sync or async processor and return its outcome."""
    result = processor(item, context)
    if inspect.isawaitable(result):
        result = await result
    if not isinstance(result, ItemOutcome):
        raise TypeError(f"Processor returned {type(result).__name__}, expected ItemOutcome")
    return result


def skip_unsupported(item: AffectedItem, context: ProcessorContext) -> ItemOutcome:
    return ItemOutcome.skip("Issue type not yet supported")


class ProcessorRegistry:
    """Maps issue types to processors; unknown types skip every item."""

    def __init__(self, default: Processor = skip_unsupported):
        self._processors: Dict[str, Processor] = {}
        self._default = default

    def register(self, issue_type: str) -> Callable[[Processor], Processor]:
        def decorator(fn: Processor) -> Processor:
            self._processors[issue_type.lower()] = fn
            logger.debug("processor_registered", issue_type=issue_type.lower())
            return fn
        return decorator

    def get(self, issue_type: str) -> Processor:
        return self._processors.get(issue_type.lower(), self._default)

    def issue_types(self) -> List[str]:
        return sorted(self._processors)


# Global registry instance
registry = ProcessorRegistry()


@registry.register("images")
async def generate_alt_texts(item: AffectedItem, context: ProcessorContext) -> ItemOutcome:
    """Ask the generate-alt-texts edge function to fill the product's image alt texts."""
    body: Dict[str, Any] = {
        "shopId": context.shop_id,
        "productId": item.id,
        "generateFor": "all",
    }

    def invoke():
        return get_supabase().functions.invoke(
            "generate-alt-texts",
            invoke_options={"body": body, "responseType": "json"},
        )

    loop = asyncio.get_event_loop()
    try:
        result = await loop.run_in_executor(None, invoke)
    except Exception as e:
        return ItemOutcome.failure(f"Alt text generation failed: {e}")

    if isinstance(result, dict) and result.get("success"):
        return ItemOutcome.success()
    error = result.get("error") if isinstance(result, dict) else None
    return ItemOutcome.failure(error or "Unknown error")
