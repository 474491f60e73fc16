"""HTTP command surface (FastAPI) for the branch lifecycle engine."""

from branch_api.app import create_app

__all__ = ["create_app"]
