from .gemini import AnalysisClient, GeminiClient, is_quota_error

__all__ = ["AnalysisClient", "GeminiClient", "is_quota_error"]
