"""Transcoding module for audio/video processing.

Implements ffprobe metadata extraction and ffmpeg-based renditions,
thumbnails, previews, sprite sheets, waveforms and HLS segmenting, with
every output stored in CDN-backed blob storage.
"""
