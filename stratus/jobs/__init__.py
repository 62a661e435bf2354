from stratus.jobs.manager import JobManager, JobState, JobStatus

__all__ = ["JobManager", "JobState", "JobStatus"]
