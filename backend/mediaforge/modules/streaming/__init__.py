"""Streaming delivery module.

Builds HLS, DASH and progressive manifests from transcoded outputs and
adapts delivery to device, connection and region.
"""
