from .dsl import JobBuilder, build, job, on, sh, uses, wf
from .errors import CycleError, DefinitionError, FlowCIError
from .loader import load_pipeline
from .model import Job, JobStatus, Pipeline, PipelineRun, RunResult, Step
from .scheduler import Scheduler, run_pipeline

__version__ = "0.3.0"

__all__ = [
    "CycleError",
    "DefinitionError",
    "FlowCIError",
    "Job",
    "JobBuilder",
    "JobStatus",
    "Pipeline",
    "PipelineRun",
    "RunResult",
    "Scheduler",
    "Step",
    "build",
    "job",
    "load_pipeline",
    "on",
    "run_pipeline",
    "sh",
    "uses",
    "wf",
]
