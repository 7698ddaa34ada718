from deflection.models.tenant import Tenant
from deflection.models.job import DeflectionJob, JobStatus, JobPriority
from deflection.models.analysis import TicketAnalysis
from deflection.models.knowledge import KnowledgeArticle, ResponseTemplate
from deflection.models.system_error import SystemErrorLog

__all__ = [
    "Tenant", "DeflectionJob", "JobStatus", "JobPriority", "TicketAnalysis",
    "KnowledgeArticle", "ResponseTemplate", "SystemErrorLog",
]
