"""Local executor that echoes the goal prompt back, for smoke runs without a real provider."""

from __future__ import annotations

from swarm_dispatch.coordination.dispatcher import ExecutionReport
from swarm_dispatch.coordination.models import Job, Provider


class EchoExecutor:
    """Deterministic ``JobExecutor``: output is the prompt tagged with the provider name."""

    def run(self, job: Job, provider: Provider) -> ExecutionReport:
        text = job.goal_prompt.strip() or "empty goal"
        output = f"[{provider.name}] {text}"
        return ExecutionReport(
            success=True,
            output=output,
            input_tokens=len(job.goal_prompt.split()),
            output_tokens=len(output.split()),
            total_cost_usd=0.0,
        )
