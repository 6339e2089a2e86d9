"""Streaming manifest building and delivery optimization.

Turns transcoded outputs into HLS, DASH or progressive manifests, rewrites
output URLs for the CDN, and adapts quality and preloading to the client's
device and connection.
"""

import json
import logging
import re
import time
from collections import deque
from email.utils import formatdate
from typing import Iterable, Optional
from urllib.parse import urlencode
from xml.sax.saxutils import escape, quoteattr

from mediaforge.core.config import Settings, settings as default_settings
from mediaforge.modules.streaming.models import (
    ABR_BY_NAME,
    BANDWIDTH_HISTORY_SIZE,
    BANDWIDTH_WEIGHT_BASE,
    CACHE_TTLS,
    CHUNK_SIZE,
    CONNECTION_THRESHOLDS,
    DASH_VIDEO_CODEC,
    DEFAULT_CODECS,
    DEFAULT_FRAME_RATE,
    DEFAULT_RUNG,
    EDGE_TTL,
    FAST_CONNECTIONS,
    MAX_CONCURRENT_CHUNKS,
    MAX_CONCURRENT_CHUNKS_CAP,
    MOBILE_PRELOAD_FACTOR,
    PRELOAD_PRIORITIES,
    PRELOAD_SIZE,
    SLOW_CONNECTIONS,
    SWITCH_THRESHOLD,
    THUMBNAIL_TRACK_COLUMNS,
    THUMBNAIL_TRACK_HEIGHT,
    THUMBNAIL_TRACK_INTERVAL,
    THUMBNAIL_TRACK_ROWS,
    THUMBNAIL_TRACK_WIDTH,
    AbrRung,
    AssetKind,
    DeviceType,
    StreamingType,
)
from mediaforge.modules.streaming.schemas import (
    BandwidthInfo,
    DeliveryOptions,
    DeviceInfo,
    PreloadingStrategy,
    QualityLevel,
    StreamingManifest,
    StreamingMetadata,
    ThumbnailTrack,
)
from mediaforge.modules.transcoding.schemas import ProcessingOutput

logger = logging.getLogger(__name__)

LADDER_FORMATS = frozenset(("mp4", "hls", "dash"))
SEGMENTED_FORMATS = frozenset(("hls", "dash"))
QUALITY_PATTERN = re.compile(r"(1080p|720p|480p|360p|240p)", re.IGNORECASE)
HOST_PATTERN = re.compile(r"^https?://[^/]+")


def extract_rung(output: ProcessingOutput) -> tuple[AbrRung, bool]:
    """Map an output to its ABR rung.

    Returns the rung and whether the output's label named it explicitly;
    unlabeled outputs fall back to 480p.
    """
    match = QUALITY_PATTERN.search(output.quality or "")
    if match:
        return ABR_BY_NAME[match.group(1).lower()], True
    return DEFAULT_RUNG, False


def classify_connection(downlink_mbps: float) -> str:
    """Connection class for a downlink measured in Mbps."""
    for threshold, name in CONNECTION_THRESHOLDS:
        if downlink_mbps >= threshold:
            return name
    return "slow-2g"


def _format_frame_rate(frame_rate: float) -> str:
    return f"{frame_rate:.3f}".rstrip("0").rstrip(".")


class StreamingOptimizer:
    """Builds delivery manifests and tunes playback for a client.

    Holds two caches: the region to CDN domain lookup and per-session
    bandwidth history. Everything else is a pure function of its inputs.
    """

    def __init__(
        self,
        primary_domain: str,
        fallback_domains: Iterable[str] = (),
        region_domains: Optional[dict[str, str]] = None,
    ):
        self.primary_domain = primary_domain
        self.fallback_domains = list(fallback_domains)
        self.region_domains = dict(region_domains or {})
        self._region_cache: dict[str, str] = {}
        self._bandwidth_history: dict[str, deque[BandwidthInfo]] = {}

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "StreamingOptimizer":
        return cls(
            primary_domain=settings.STREAMING_PRIMARY_CDN_DOMAIN,
            fallback_domains=settings.STREAMING_FALLBACK_CDN_DOMAINS,
            region_domains=settings.STREAMING_REGION_DOMAINS,
        )

    # ==================== Manifest ====================

    def build_manifest(
        self,
        outputs: list[ProcessingOutput],
        metadata: StreamingMetadata,
        options: Optional[DeliveryOptions] = None,
    ) -> StreamingManifest:
        """Build a manifest for the outputs of one piece of content.

        Args:
            outputs: Outputs produced by the transcoding engine
            metadata: Content metadata carried in the manifest
            options: Client context; never mutated

        Returns:
            StreamingManifest whose qualities are strictly descending by bandwidth
        """
        options = options or DeliveryOptions()
        logger.info(
            "Generating streaming manifest",
            extra={
                "content_id": metadata.content_id,
                "output_count": len(outputs),
                "device_type": options.device_info.type.value if options.device_info else None,
            },
        )

        streaming_type = self.select_streaming_type(outputs, options)
        qualities = self.build_quality_ladder(outputs, options)

        return StreamingManifest(
            type=streaming_type,
            master_playlist=self.generate_master_playlist(qualities, streaming_type, metadata),
            qualities=qualities,
            thumbnails=self.build_thumbnail_track(outputs),
            metadata=metadata,
        )

    def select_streaming_type(
        self,
        outputs: list[ProcessingOutput],
        options: DeliveryOptions,
    ) -> StreamingType:
        has_hls = any(o.format == "hls" for o in outputs)
        has_dash = any(o.format == "dash" for o in outputs)

        device = options.device_info
        capabilities = device.capabilities if device else None
        supports_hls = capabilities is None or capabilities.hls
        supports_dash = capabilities is None or capabilities.dash

        # Mobile players handle HLS natively
        if device and device.type == DeviceType.MOBILE and supports_hls and has_hls:
            return StreamingType.HLS
        if supports_dash and has_dash:
            return StreamingType.DASH
        if supports_hls and has_hls:
            return StreamingType.HLS
        return StreamingType.PROGRESSIVE

    def build_quality_ladder(
        self,
        outputs: list[ProcessingOutput],
        options: DeliveryOptions,
    ) -> list[QualityLevel]:
        """One quality level per ABR rung, highest bandwidth first.

        Only outputs whose label names a rung are renditions. Auxiliary
        outputs such as the preview clip never enter the ladder; an HLS or
        DASH output without a rung label stands in at the default rung only
        when no labelled rendition exists. The first output seen for a rung
        is kept.
        """
        mapped = [
            (output, *extract_rung(output))
            for output in outputs
            if output.format in LADDER_FORMATS
        ]
        renditions = [(output, rung) for output, rung, named in mapped if named]
        if not renditions:
            renditions = [
                (output, rung)
                for output, rung, _ in mapped
                if output.format in SEGMENTED_FORMATS
            ]

        ceiling = None
        if options.preferences and options.preferences.max_quality in ABR_BY_NAME:
            ceiling = ABR_BY_NAME[options.preferences.max_quality].bandwidth

        ladder: dict[str, QualityLevel] = {}
        for output, rung in renditions:
            if rung.name in ladder:
                continue
            if ceiling is not None and rung.bandwidth > ceiling:
                continue
            ladder[rung.name] = QualityLevel(
                quality=rung.name,
                bandwidth=rung.bandwidth,
                resolution=rung.resolution,
                url=self.optimize_url(output.url, options),
                codecs=DEFAULT_CODECS,
                frame_rate=DEFAULT_FRAME_RATE,
            )

        return sorted(ladder.values(), key=lambda q: q.bandwidth, reverse=True)

    def optimize_url(self, url: str, options: DeliveryOptions) -> str:
        """Route a URL through the CDN and tag it with client hints."""
        optimized = url
        if self.primary_domain:
            optimized = HOST_PATTERN.sub(f"https://{self.primary_domain}", optimized, count=1)

        if options.user_location and options.user_location.region:
            regional = self.region_domains.get(options.user_location.region)
            if regional and self.primary_domain:
                optimized = optimized.replace(self.primary_domain, regional, 1)

        params = {}
        if options.device_info:
            params["device"] = options.device_info.type.value
        if options.connection_info and options.connection_info.type:
            params["connection"] = options.connection_info.type
        if options.preferences and options.preferences.data_saver:
            params["datasaver"] = "1"

        if params:
            separator = "&" if "?" in optimized else "?"
            optimized = f"{optimized}{separator}{urlencode(params)}"
        return optimized

    def build_thumbnail_track(self, outputs: list[ProcessingOutput]) -> Optional[ThumbnailTrack]:
        sprite = next((o for o in outputs if o.quality == "sprite"), None)
        if sprite is None:
            return None
        return ThumbnailTrack(
            url=sprite.url,
            interval=THUMBNAIL_TRACK_INTERVAL,
            columns=THUMBNAIL_TRACK_COLUMNS,
            rows=THUMBNAIL_TRACK_ROWS,
            width=THUMBNAIL_TRACK_WIDTH,
            height=THUMBNAIL_TRACK_HEIGHT,
        )

    def generate_master_playlist(
        self,
        qualities: list[QualityLevel],
        streaming_type: StreamingType,
        metadata: StreamingMetadata,
    ) -> str:
        if streaming_type == StreamingType.HLS:
            return self.generate_hls_master_playlist(qualities)
        if streaming_type == StreamingType.DASH:
            return self.generate_dash_manifest(qualities, metadata)
        return self.generate_progressive_playlist(qualities, metadata)

    @staticmethod
    def generate_hls_master_playlist(qualities: list[QualityLevel]) -> str:
        lines = ["#EXTM3U", "#EXT-X-VERSION:6"]
        for quality in qualities:
            stream_inf = (
                f"#EXT-X-STREAM-INF:BANDWIDTH={quality.bandwidth}"
                f",RESOLUTION={quality.resolution}"
                f',CODECS="{quality.codecs}"'
            )
            if quality.frame_rate:
                stream_inf += f",FRAME-RATE={_format_frame_rate(quality.frame_rate)}"
            lines.append(stream_inf)
            lines.append(quality.url)
        return "\n".join(lines) + "\n"

    @staticmethod
    def generate_dash_manifest(qualities: list[QualityLevel], metadata: StreamingMetadata) -> str:
        representations = []
        for quality in qualities:
            width, _, height = quality.resolution.partition("x")
            representations.append(
                f"      <Representation id={quoteattr(quality.quality)}"
                f' bandwidth="{quality.bandwidth}" width={quoteattr(width)} height={quoteattr(height)}>\n'
                f"        <BaseURL>{escape(quality.url)}</BaseURL>\n"
                f"      </Representation>"
            )

        body = "\n".join(representations)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            '<MPD xmlns="urn:mpeg:dash:schema:mpd:2011" type="static"'
            f' mediaPresentationDuration="PT{int(metadata.duration)}S"'
            ' profiles="urn:mpeg:dash:profile:isoff-main:2011">\n'
            "  <Period>\n"
            f'    <AdaptationSet mimeType="video/mp4" codecs="{DASH_VIDEO_CODEC}">\n'
            f"{body}\n"
            "    </AdaptationSet>\n"
            "  </Period>\n"
            "</MPD>\n"
        )

    @staticmethod
    def generate_progressive_playlist(
        qualities: list[QualityLevel],
        metadata: StreamingMetadata,
    ) -> str:
        return json.dumps(
            {
                "type": StreamingType.PROGRESSIVE.value,
                "duration": metadata.duration,
                "sources": [
                    {
                        "src": quality.url,
                        "type": "video/mp4",
                        "quality": quality.quality,
                        "bandwidth": quality.bandwidth,
                        "resolution": quality.resolution,
                    }
                    for quality in qualities
                ],
            },
            separators=(",", ":"),
        )

    # ==================== Adaptation ====================

    @staticmethod
    def is_data_saver_mode(device: DeviceInfo, bandwidth: BandwidthInfo) -> bool:
        """Mobile on 2g/slow-2g, or any device below 1 Mbps."""
        if device.type == DeviceType.MOBILE and bandwidth.type in SLOW_CONNECTIONS:
            return True
        return bandwidth.downlink < 1

    def recommend_quality(
        self,
        qualities: list[QualityLevel],
        bandwidth: BandwidthInfo,
        device: Optional[DeviceInfo] = None,
    ) -> QualityLevel:
        """Pick the best rung the connection can sustain.

        Args:
            qualities: Ladder, highest bandwidth first
            bandwidth: Current measurement
            device: Client device, enables data-saver detection

        Raises:
            ValueError: If the ladder is empty
        """
        if not qualities:
            raise ValueError("Cannot recommend a quality from an empty ladder")

        if device is not None and self.is_data_saver_mode(device, bandwidth):
            return next((q for q in qualities if q.quality == "360p"), qualities[-1])

        available = bandwidth.downlink * 1_000_000 * SWITCH_THRESHOLD
        for quality in qualities:
            if quality.bandwidth <= available:
                return quality
        return qualities[-1]

    def generate_preloading_strategy(
        self,
        manifest: StreamingManifest,
        options: Optional[DeliveryOptions] = None,
    ) -> PreloadingStrategy:
        options = options or DeliveryOptions()
        connection = options.connection_info.type if options.connection_info else "4g"
        device = options.device_info.type if options.device_info else DeviceType.DESKTOP

        preload_amount = PRELOAD_SIZE
        chunk_size = CHUNK_SIZE
        max_concurrent = MAX_CONCURRENT_CHUNKS

        if connection in SLOW_CONNECTIONS:
            preload_amount //= 4
            chunk_size //= 2
            max_concurrent = 1

        if connection in FAST_CONNECTIONS:
            preload_amount *= 2
            max_concurrent = min(max_concurrent * 2, MAX_CONCURRENT_CHUNKS_CAP)

        if device == DeviceType.MOBILE:
            preload_amount = int(preload_amount * MOBILE_PRELOAD_FACTOR)

        return PreloadingStrategy(
            preload_amount=preload_amount,
            chunk_size=chunk_size,
            max_concurrent=max_concurrent,
            priorities=list(PRELOAD_PRIORITIES),
        )

    # ==================== Bandwidth ====================

    def track_bandwidth(self, session_id: str, sample: BandwidthInfo) -> None:
        """Record a measurement; only the latest ten per session are kept."""
        history = self._bandwidth_history.setdefault(
            session_id, deque(maxlen=BANDWIDTH_HISTORY_SIZE)
        )
        history.append(sample)

    def predict_bandwidth(self, session_id: str) -> Optional[BandwidthInfo]:
        """Recency-weighted average of a session's measurements."""
        history = self._bandwidth_history.get(session_id)
        if not history:
            return None

        weights = [BANDWIDTH_WEIGHT_BASE ** i for i in range(len(history))]
        total = sum(weights)
        downlink = sum(s.downlink * w for s, w in zip(history, weights)) / total
        rtt = sum(s.rtt * w for s, w in zip(history, weights)) / total

        return BandwidthInfo(
            estimated=downlink * 1_000_000,
            effective=classify_connection(downlink),
            rtt=rtt,
            downlink=downlink,
            type=history[-1].type,
        )

    # ==================== CDN ====================

    @staticmethod
    def generate_cache_headers(kind: AssetKind, now: Optional[float] = None) -> dict[str, str]:
        """HTTP cache headers for an asset class."""
        now = time.time() if now is None else now
        kind = AssetKind(kind)
        ttl = CACHE_TTLS[kind]
        return {
            "Cache-Control": f"public, max-age={ttl}, s-maxage={ttl}",
            "CDN-Cache-Control": f"public, max-age={EDGE_TTL}",
            "Expires": formatdate(now + ttl, usegmt=True),
            "ETag": f'"{kind.value}-{int(now * 1000)}"',
            "Vary": "Accept-Encoding, User-Agent",
        }

    def optimize_for_region(self, url: str, region: str, kind: AssetKind = AssetKind.VIDEO) -> str:
        """Swap the primary CDN domain for the region's edge domain.

        Every asset kind is routed the same way; unknown regions keep the
        primary domain.
        """
        domain = self._region_cache.get(region)
        if domain is None:
            domain = self.region_domains.get(region, self.primary_domain)
            self._region_cache[region] = domain
        return url.replace(self.primary_domain, domain, 1)

    def generate_fallback_urls(self, url: str) -> list[str]:
        """The URL itself followed by the URL on each fallback domain."""
        return [url] + [
            url.replace(self.primary_domain, domain, 1)
            for domain in self.fallback_domains
        ]

    def clear_caches(self) -> None:
        self._region_cache.clear()
        self._bandwidth_history.clear()
        logger.info("Streaming optimizer caches cleared")
