"""
Translation call executor.

Runs one batch against one provider handle, single-shot or streaming,
and turns the answer into an AlignmentResult. Batches the provider
rejects as too large are halved and resubmitted.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from subtrans.core.alignment import align
from subtrans.core.exceptions import OutputTooLarge, ProviderTimeout
from subtrans.core.models import AlignmentResult, Batch
from subtrans.core.planner import BatchPlanner
from subtrans.translation.base import ProviderHandle, TranslationRequest
from subtrans.translation.output_cleaner import has_reasoning_wrapper
from subtrans.translation.prompts import build_system_prompt
from subtrans.translation.workflows import Workflow
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[AlignmentResult], Awaitable[None]]

_STREAM_END = object()


class CallExecutor:
    """Issues batch translation calls for one job."""

    def __init__(
        self,
        workflow: Workflow,
        planner: BatchPlanner,
        source_lang: str,
        target_lang: str,
        custom_prompt: Optional[str] = None,
        streaming: bool = False,
        timeout: float = 300.0,
        temperature: float = 0.0
    ):
        self.workflow = workflow
        self.planner = planner
        self.source_lang = source_lang
        self.target_lang = target_lang
        self.custom_prompt = custom_prompt
        self.streaming = streaming
        self.timeout = timeout
        self.temperature = temperature
        self.calls = 0

    def build_request(self, batch: Batch) -> TranslationRequest:
        return TranslationRequest(
            text=batch.payload,
            source_lang=self.source_lang,
            target_lang=self.target_lang,
            system_prompt=build_system_prompt(
                self.workflow, self.source_lang, self.target_lang, len(batch), self.custom_prompt
            ),
            temperature=self.temperature,
        )

    async def execute(
        self,
        batch: Batch,
        handle: ProviderHandle,
        on_progress: Optional[ProgressCallback] = None
    ) -> AlignmentResult:
        """
        Translate one batch.

        Args:
            batch: Batch to translate
            handle: Provider/credential to use
            on_progress: Awaited with a best-effort alignment whenever the
                streamed response completes another entry

        Returns:
            Alignment of the response; entries the provider skipped are
            reported as missing

        Raises:
            TranslationError: any classified failure except OutputTooLarge
        """
        try:
            text = await self._call(batch, handle, on_progress)
        except OutputTooLarge as e:
            return await self._halve(batch, handle, e)

        if has_reasoning_wrapper(text):
            logger.debug(f"Batch {batch.number}: stripping reasoning/code wrappers from {handle.handle_id} output")
        items = self.workflow.parse(text, expected=len(batch))
        return align(batch.entries, items, self.workflow)

    async def _halve(self, batch: Batch, handle: ProviderHandle, error: OutputTooLarge) -> AlignmentResult:
        if len(batch) == 1:
            logger.warning(
                f"Entry {batch.first_index} still exceeds {handle.handle_id} output limit; leaving it missing"
            )
            return AlignmentResult(missing={batch.first_index})

        middle = len(batch) // 2
        halves = [
            self.planner.make_batch(batch.entries[:middle], batch.number),
            self.planner.make_batch(batch.entries[middle:], batch.number),
        ]
        logger.info(
            f"Batch {batch.number} ({len(batch)} entries) too large for {handle.handle_id}: {error.message}. "
            f"Splitting into {len(halves[0])} + {len(halves[1])}"
        )
        results = []
        for half in halves:
            results.append(await self.execute(half, handle))
        return AlignmentResult.combine(results)

    async def _call(self, batch: Batch, handle: ProviderHandle, on_progress: Optional[ProgressCallback]) -> str:
        request = self.build_request(batch)
        self.calls += 1
        try:
            if self.streaming:
                return await asyncio.wait_for(self._consume_stream(batch, handle, request, on_progress), self.timeout)
            response = await asyncio.wait_for(handle.translate(request), self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(
                f"{handle.handle_id} did not answer batch {batch.number} within {self.timeout:.0f}s",
                provider=handle.provider,
                original_error=e,
            ) from e
        logger.debug(
            f"Batch {batch.number}: {handle.handle_id} answered in {response.latency:.2f}s "
            f"({response.tokens_used} tokens)"
        )
        return response.text

    async def _consume_stream(
        self,
        batch: Batch,
        handle: ProviderHandle,
        request: TranslationRequest,
        on_progress: Optional[ProgressCallback]
    ) -> str:
        """Read chunks produced by a background task and parse the growing text after each one."""
        queue: asyncio.Queue = asyncio.Queue()

        async def produce():
            try:
                async for chunk in handle.stream(request):
                    await queue.put(chunk)
            except Exception as e:
                # handed to the consumer, which re-raises it
                await queue.put(e)
            else:
                await queue.put(_STREAM_END)

        producer = asyncio.create_task(produce())
        text = ""
        complete_items = 0
        try:
            while True:
                chunk = await queue.get()
                if chunk is _STREAM_END:
                    break
                if isinstance(chunk, Exception):
                    raise chunk
                text += chunk
                if on_progress is None:
                    continue
                items = self.workflow.parse_partial(text)
                if len(items) > complete_items:
                    complete_items = len(items)
                    await on_progress(align(batch.entries, items, self.workflow))
        finally:
            if not producer.done():
                producer.cancel()
        return text
