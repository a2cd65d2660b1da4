from fileforge.conversion_engine.models.job import ConversionJob, JobStatus
from fileforge.conversion_engine.models.queue_task import QueueTask, TaskState
from fileforge.conversion_engine.models.task_event import TaskEvent

__all__ = ["ConversionJob", "JobStatus", "QueueTask", "TaskEvent", "TaskState"]
