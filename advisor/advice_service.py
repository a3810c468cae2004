from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from advisor.advice_output import OutputRepairer
from advisor.agent_loop import CancelCheck, ToolCallingAgent, ToolCallRecord
from advisor.business_data import BusinessDataProvider, QuestionRoute, classify_question, route_question, to_slim_report
from advisor.llm_provider import ChatBackend
from advisor.prompts import PromptSet
from advisor.stream_relay import StreamRelay
from advisor.tools_registry import PLACES_SEARCH, ToolHints

logger = logging.getLogger(__name__)


def build_messages(
    prompts: PromptSet,
    slim_report: Mapping[str, Any],
    options: Mapping[str, Any],
    question: str,
    route: QuestionRoute | None = None,
) -> list[dict[str, Any]]:
    area = str((slim_report.get("dong") or {}).get("name") or "")
    route = route or classify_question(question)
    return [
        {"role": "system", "content": prompts.system},
        {"role": "system", "content": prompts.route_note(route)},
        {
            "role": "user",
            "content": prompts.user.format(
                report_json=json.dumps(slim_report, ensure_ascii=False, indent=2),
                options_json=json.dumps(dict(options), ensure_ascii=False, indent=2),
                question=question or "(질문 없음)",
                area=area,
            ),
        },
    ]


def _places_from(records: list[ToolCallRecord]) -> list[dict[str, Any]]:
    for record in records:
        if record.tool_name == PLACES_SEARCH and record.result.get("ok") and not record.skipped:
            return list(record.result.get("places") or [])
    return []


class AdviceService:
    """One attempt of one advice job: report -> agent -> validated output."""

    def __init__(
        self,
        *,
        business_data: BusinessDataProvider,
        agent: ToolCallingAgent,
        repairer: OutputRepairer,
        relay: StreamRelay,
        prompts: PromptSet,
        classifier: ChatBackend | None = None,
    ) -> None:
        self.business_data = business_data
        self.classifier = classifier
        self.agent = agent
        self.repairer = repairer
        self.relay = relay
        self.prompts = prompts

    async def run(self, job: Mapping[str, Any], *, should_cancel: CancelCheck | None = None) -> dict[str, Any]:
        job_id = str(job["job_id"])
        job_input = job.get("input") or {}
        options = dict(job_input.get("options") or {})
        question = str(job_input.get("question") or "")

        start_seq = await self.relay.begin_attempt(job_id)
        report = await self.business_data.get_district_report(int(job_input["district_id"]))
        slim = to_slim_report(report)
        await self.relay.progress(job_id, "report_loaded")
        route = await route_question(question, self.classifier, prompt=self.prompts.classify)

        hints = ToolHints(
            area=str(slim["dong"].get("name") or ""),
            concept=str(options.get("concept") or ""),
            question=question,
        )
        run = await self.agent.run(
            job_id,
            build_messages(self.prompts, slim, options, question, route),
            hints,
            final_instruction=self.prompts.final,
            should_cancel=should_cancel,
            start_seq=start_seq,
        )

        await self.relay.progress(job_id, "validating")
        repaired = await self.repairer.finalize(run.text, tool_results=[r.result for r in run.records])
        logger.info(
            "advice output ready job=%s path=%s llm_attempts=%d reasons=%s",
            job_id,
            repaired.path,
            repaired.llm_attempts,
            repaired.reasons,
        )
        return {
            **repaired.output.as_dict(),
            "report": {"dong": slim["dong"]},
            "places": _places_from(run.records),
            "meta": {
                "outputPath": repaired.path,
                "route": route,
                "rounds": run.rounds,
                "toolCalls": [
                    {
                        "tool": r.tool_name,
                        "cacheHit": r.cache_hit,
                        "memoHit": r.memo_hit,
                        "reused": r.reused,
                        "skipped": r.skipped,
                        "ok": bool(r.result.get("ok")),
                    }
                    for r in run.records
                ],
            },
        }
