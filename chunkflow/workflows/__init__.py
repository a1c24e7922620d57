__all__ = [
    "WorkflowResult",
    "build_chunked_workflow",
    "run_chunked_workflow",
    "SummaryWorkflow",
    "MeetingAnalysisWorkflow",
]

_MODULES = {
    "WorkflowResult": "chunked",
    "build_chunked_workflow": "chunked",
    "run_chunked_workflow": "chunked",
    "SummaryWorkflow": "summary",
    "MeetingAnalysisWorkflow": "meeting_analysis",
}


def __getattr__(name: str):
    if name in __all__:
        from importlib import import_module

        module = import_module(f"chunkflow.workflows.{_MODULES[name]}")
        return getattr(module, name)
    raise AttributeError(name)
