"""Long-running ingestion service: engine, scheduler and health endpoint."""

__version__ = "0.1.0"


def main() -> None:
    # Settings are read from the environment only when the service starts
    from .app import main as run_service

    run_service()


__all__ = ["main", "__version__"]
