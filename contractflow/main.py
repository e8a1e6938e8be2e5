from contractflow.api.main import app

__all__ = ["app"]
