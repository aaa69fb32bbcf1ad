from app.modules.audit.domain.consistency import ConsistencyAuditor

__all__ = ["ConsistencyAuditor"]
