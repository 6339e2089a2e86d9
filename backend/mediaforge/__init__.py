"""Mediaforge media processing backend.

Ingests uploaded audio/video assets, produces delivery-ready renditions and
builds streaming manifests for them.

Modules:
    - core: Configuration, database, storage, logging, metrics, Celery setup
    - modules.transcoding: ffprobe/ffmpeg wrappers and the transcoding engine
    - modules.job: Transcoding job queue, scheduler and job store
    - modules.streaming: Manifest building and delivery optimization
"""

__version__ = "0.1.0"
