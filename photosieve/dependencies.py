"""FastAPI dependency injection for application services."""

from fastapi import Request

from photosieve.services.similarity_service import SimilarityService


def get_similarity_service(request: Request) -> SimilarityService:
    """Return the application-wide SimilarityService stored on app.state."""
    return request.app.state.similarity_service
