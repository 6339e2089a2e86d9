"""Application modules.

- transcoding: ffprobe/ffmpeg wrappers and the transcoding engine
- job: Transcoding job queue and scheduler
- streaming: Delivery manifests and playback optimization
"""
