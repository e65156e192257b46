"""
enginelab Collect Module - resumable sample collection under CPU isolation.
"""

from enginelab.collect.driver import CollectReport, HostInfo, StudyDriver
from enginelab.collect.scheduler import (
    SampleScheduler,
    SampleStatus,
    ScheduleReport,
    sample_status,
    study_status,
)

__all__ = [
    "CollectReport",
    "HostInfo",
    "SampleScheduler",
    "SampleStatus",
    "ScheduleReport",
    "StudyDriver",
    "sample_status",
    "study_status",
]
