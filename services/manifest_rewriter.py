import logging
import re
from urllib.parse import urljoin, urlsplit

from services.token_codec import encode

logger = logging.getLogger(__name__)

URI_ATTRIBUTE_RE = re.compile(r'URI="([^"]*)"')

# Directives whose quoted URI attribute points at another proxied resource
URI_DIRECTIVES = (
    '#EXT-X-KEY',
    '#EXT-X-SESSION-KEY',
    '#EXT-X-MAP',
    '#EXT-X-MEDIA',
    '#EXT-X-I-FRAME-STREAM-INF',
)

VARIANT_DIRECTIVE = '#EXT-X-STREAM-INF'
MEDIA_DIRECTIVE = '#EXT-X-MEDIA'


class ManifestParseAnomaly(ValueError):
    """A manifest line that could not be turned into an upstream URL."""
    pass


class ManifestRewriter:
    """Rewrites HLS manifests so every referenced resource goes back through /hls/{token}."""

    @staticmethod
    def base_directory(base_url: str) -> str:
        """Everything up to and including the last '/' of the URL path, query dropped."""
        without_query = base_url.split('?', 1)[0].split('#', 1)[0]
        return without_query[:without_query.rfind('/') + 1]

    @staticmethod
    def resolve_uri(uri: str, base_url: str) -> str:
        uri = uri.strip()
        if not uri:
            raise ManifestParseAnomaly("empty URI")
        lowered = uri.lower()
        if lowered.startswith('http://') or lowered.startswith('https://'):
            return uri
        if uri.startswith('//'):
            scheme = urlsplit(base_url).scheme or 'https'
            return f"{scheme}:{uri}"
        if ':' in uri.split('/', 1)[0]:
            # data:, skd: and similar schemes cannot be proxied
            raise ManifestParseAnomaly(f"unsupported URI scheme: {uri[:40]}")
        return urljoin(ManifestRewriter.base_directory(base_url), uri)

    @staticmethod
    def is_manifest_url(url: str) -> bool:
        return urlsplit(url).path.lower().endswith('.m3u8')

    @staticmethod
    def proxy_url(absolute_url: str, session_id: str, proxy_base_url: str) -> str:
        ext = 'm3u8' if ManifestRewriter.is_manifest_url(absolute_url) else 'ts'
        return f"{proxy_base_url.rstrip('/')}/hls/{encode(session_id, absolute_url)}.{ext}"

    @staticmethod
    def _rewrite_uri_attribute(line: str, base_url: str, session_id: str, proxy_base_url: str) -> str:
        def replace(match):
            try:
                absolute = ManifestRewriter.resolve_uri(match.group(1), base_url)
            except ManifestParseAnomaly as e:
                logger.debug(f"Leaving URI attribute untouched: {e}")
                return match.group(0)
            return f'URI="{ManifestRewriter.proxy_url(absolute, session_id, proxy_base_url)}"'

        return URI_ATTRIBUTE_RE.sub(replace, line)

    @staticmethod
    def rewrite(text: str, base_url: str, session_id: str, proxy_base_url: str) -> str:
        """Rewrites URI lines (and URI attributes of key/map/media tags) into proxy URLs.

        Blank lines and other directives are kept verbatim and in order, so the
        output always has as many lines as the input.
        """
        out = []
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line:
                out.append(raw_line)
                continue
            if line.startswith('#'):
                if line.startswith(URI_DIRECTIVES) and 'URI="' in line:
                    out.append(ManifestRewriter._rewrite_uri_attribute(raw_line, base_url, session_id, proxy_base_url))
                else:
                    out.append(raw_line)
                continue
            try:
                absolute = ManifestRewriter.resolve_uri(line, base_url)
            except ManifestParseAnomaly as e:
                logger.debug(f"Passing malformed manifest line through: {e}")
                out.append(raw_line)
                continue
            out.append(ManifestRewriter.proxy_url(absolute, session_id, proxy_base_url))
        rewritten = "\n".join(out)
        if text.endswith(("\n", "\r")):
            rewritten += "\n"
        return rewritten

    @staticmethod
    def extract_variants(text: str, base_url: str) -> list[str]:
        """Absolute URLs of the nested manifests a master playlist points at."""
        variants = []
        lines = [line.strip() for line in text.splitlines()]
        for i, line in enumerate(lines):
            if not (line.startswith(VARIANT_DIRECTIVE) or line.startswith(MEDIA_DIRECTIVE)):
                continue

            uri = None
            match = URI_ATTRIBUTE_RE.search(line)
            if match:
                uri = match.group(1)
            elif line.startswith(VARIANT_DIRECTIVE):
                for following in lines[i + 1:]:
                    if not following:
                        continue
                    if not following.startswith('#'):
                        uri = following
                    break
            if not uri:
                continue

            try:
                absolute = ManifestRewriter.resolve_uri(uri, base_url)
            except ManifestParseAnomaly:
                continue
            if ManifestRewriter.is_manifest_url(absolute) and absolute not in variants:
                variants.append(absolute)
        return variants
