"""Service layer for ingestion and risk analysis."""
from .ingestion_service import IngestionService
from .risk_service import RiskEngine

__all__ = ["IngestionService", "RiskEngine"]
