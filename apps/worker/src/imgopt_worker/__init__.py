"""
This app is deployed on machines that hold the images. It:
1. Queues images (from upload hooks, cron or the CLI)
2. Claims batches of jobs from the queue database
3. Runs the conversion (using the imgopt-converter package)
4. Records job outcomes and activity for the status commands

Deployment:
    pip install "imgopt[avif]"
    apt install webp  # optional, cwebp fallback backend
    imgopt enqueue /srv/uploads --recursive
    imgopt run --max-time 300
"""

from .app import Application, create_app
from .config import WorkerConfig, load_settings
from .runner import BatchRunner

__all__ = ["Application", "BatchRunner", "WorkerConfig", "create_app", "load_settings"]
