from coderflow.workflows.runner import RunResult, RunState, Step, WorkflowRunner

__all__ = ["RunResult", "RunState", "Step", "WorkflowRunner"]
