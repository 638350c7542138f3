from transcode_queue.api.main import create_app

__all__ = ["create_app"]
