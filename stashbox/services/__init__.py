"""
Application services: upload orchestration, file operations, background sweeps.
"""

from .uploads import UploadOrchestrator, UploadOptions, UploadFile, UploadBatchResult, FileResult
from .files import FileService
from .scheduler import SingleFlightJob, SweepScheduler
from .container import Services, build_services, get_services

__all__ = [
    'UploadOrchestrator',
    'UploadOptions',
    'UploadFile',
    'UploadBatchResult',
    'FileResult',
    'FileService',
    'SingleFlightJob',
    'SweepScheduler',
    'Services',
    'build_services',
    'get_services',
]
