from services.manifest_rewriter import ManifestRewriter
from services.token_codec import decode

SESSION_ID = "a" * 32
PROXY = "https://proxy.test"


def _decoded(line):
    assert line.startswith(f"{PROXY}/hls/")
    token, _, ext = line[len(f"{PROXY}/hls/"):].partition(".")
    session_id, url = decode(token)
    assert session_id == SESSION_ID
    return url, ext


def test_relative_segment_resolves_against_base_directory():
    text = "#EXTM3U\n#EXTINF:4.0,\nseg1.ts\n"

    out = ManifestRewriter.rewrite(text, "https://h/a/b/master.m3u8?x=1", SESSION_ID, PROXY)

    lines = out.splitlines()
    assert lines[:2] == ["#EXTM3U", "#EXTINF:4.0,"]
    assert _decoded(lines[2]) == ("https://h/a/b/seg1.ts", "ts")


def test_absolute_lines_keep_count_and_order():
    text = "\n".join([
        "#EXTM3U",
        "#EXT-X-STREAM-INF:BANDWIDTH=800000",
        "https://cdn.example/360/index.m3u8",
        "",
        "#EXT-X-STREAM-INF:BANDWIDTH=2400000",
        "https://cdn.example/720/index.m3u8",
    ])

    out = ManifestRewriter.rewrite(text, "https://cdn.example/master.m3u8", SESSION_ID, PROXY)

    lines = out.split("\n")
    assert len(lines) == 6
    assert lines[0] == "#EXTM3U"
    assert lines[1] == "#EXT-X-STREAM-INF:BANDWIDTH=800000"
    assert _decoded(lines[2]) == ("https://cdn.example/360/index.m3u8", "m3u8")
    assert lines[3] == ""
    assert lines[4] == "#EXT-X-STREAM-INF:BANDWIDTH=2400000"
    assert _decoded(lines[5]) == ("https://cdn.example/720/index.m3u8", "m3u8")


def test_segment_with_query_is_classified_by_path():
    text = "#EXTM3U\nhttps://cdn.example/seg.ts?sig=abc.m3u8\nhttps://cdn.example/v.m3u8?t=1\n"

    out = ManifestRewriter.rewrite(text, "https://cdn.example/index.m3u8", SESSION_ID, PROXY).splitlines()

    assert _decoded(out[1]) == ("https://cdn.example/seg.ts?sig=abc.m3u8", "ts")
    assert _decoded(out[2]) == ("https://cdn.example/v.m3u8?t=1", "m3u8")


def test_key_and_map_uri_attributes_are_proxied():
    text = '#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1\n#EXT-X-MAP:URI="init.mp4"\nseg.ts'

    out = ManifestRewriter.rewrite(text, "https://cdn.example/v/index.m3u8", SESSION_ID, PROXY).splitlines()

    assert out[1].startswith("#EXT-X-KEY:METHOD=AES-128,URI=\"")
    assert out[1].endswith('",IV=0x1')
    key_url = out[1].split('URI="', 1)[1].split('"', 1)[0]
    assert _decoded(key_url) == ("https://cdn.example/v/key.bin", "ts")
    map_url = out[2].split('URI="', 1)[1].split('"', 1)[0]
    assert _decoded(map_url) == ("https://cdn.example/v/init.mp4", "ts")


def test_unsupported_uri_passes_through():
    text = '#EXTM3U\n#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://key-id"\ndata:video/mp2t;base64,AAAA'

    out = ManifestRewriter.rewrite(text, "https://cdn.example/index.m3u8", SESSION_ID, PROXY).splitlines()

    assert out[1] == '#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://key-id"'
    assert out[2] == "data:video/mp2t;base64,AAAA"


def test_root_relative_and_protocol_relative_uris():
    text = "/abs/seg.ts\n//other.example/seg.ts"

    out = ManifestRewriter.rewrite(text, "https://cdn.example/a/b/index.m3u8", SESSION_ID, PROXY).splitlines()

    assert _decoded(out[0]) == ("https://cdn.example/abs/seg.ts", "ts")
    assert _decoded(out[1]) == ("https://other.example/seg.ts", "ts")


def test_proxy_base_trailing_slash_is_ignored():
    out = ManifestRewriter.rewrite("seg.ts", "https://cdn.example/index.m3u8", SESSION_ID, PROXY + "/")

    assert out.startswith(f"{PROXY}/hls/")


def test_extract_variants_from_next_line_and_uri_attribute():
    text = "\n".join([
        "#EXTM3U",
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",URI="audio/en.m3u8"',
        "#EXT-X-STREAM-INF:BANDWIDTH=800000",
        "",
        "360/index.m3u8?t=1",
        "#EXT-X-STREAM-INF:BANDWIDTH=2400000",
        "https://cdn2.example/720/index.m3u8",
        "#EXT-X-STREAM-INF:BANDWIDTH=100",
        "https://cdn2.example/720/index.m3u8",
    ])

    variants = ManifestRewriter.extract_variants(text, "https://cdn.example/hls/master.m3u8?sig=1")

    assert variants == [
        "https://cdn.example/hls/audio/en.m3u8",
        "https://cdn.example/hls/360/index.m3u8?t=1",
        "https://cdn2.example/720/index.m3u8",
    ]


def test_extract_variants_ignores_non_manifest_uris():
    text = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=1\nvideo.mp4\n#EXTINF:4,\nseg.ts"

    assert ManifestRewriter.extract_variants(text, "https://cdn.example/master.m3u8") == []
