from .dsl import job, sh, call, upload_artifact, download_artifact, gate, triggers, wf, pipeline, JobBuilder, build
from .runner import run_pipeline, execute
from .model import JobTemplate, JobInstance, InstanceState, Pipeline, Step
from .trigger import TriggerEvent, TriggerContext
from .report import RunReport, RunOutcome

__all__ = [
    "job", "sh", "call", "upload_artifact", "download_artifact", "gate", "triggers", "wf", "pipeline",
    "JobBuilder", "build", "run_pipeline", "execute",
    "JobTemplate", "JobInstance", "InstanceState", "Pipeline", "Step",
    "TriggerEvent", "TriggerContext", "RunReport", "RunOutcome",
]
