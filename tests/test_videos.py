"""Tests for article_harvest.services.videos: video discovery and provider detection."""

from article_harvest.services.videos import VideoExtractor, detect_provider, is_video_embed

VIDEO_PAGE = """
<html>
<head>
    <meta property="og:title" content="Launch day">
    <meta property="og:video" content="https://www.youtube.com/embed/abc123">
    <meta name="twitter:player" content="https://player.vimeo.com/video/42">
    <script type="application/ld+json">
    {"@context": "https://schema.org", "@graph": [
        {"@type": "NewsArticle", "headline": "Launch day"},
        {"@type": "VideoObject", "name": "Countdown", "contentUrl": "https://cdn.example.com/countdown.mp4"}
    ]}
    </script>
</head>
<body>
    <iframe src="https://www.youtube.com/embed/sidebar"></iframe>
    <article>
        <iframe src="https://www.youtube.com/embed/abc123" title="Duplicate of og"></iframe>
        <iframe src="https://www.dailymotion.com/embed/video/x8" title="Reaction"></iframe>
        <iframe src="https://maps.example.com/embed?q=launchpad"></iframe>
        <video src="/media/liftoff.webm">
            <source src="/media/liftoff.mp4" type="video/mp4">
        </video>
    </article>
</body>
</html>
"""


class TestDetectProvider:
    def test_known_providers(self):
        assert detect_provider("https://www.youtube.com/watch?v=x") == "youtube"
        assert detect_provider("https://youtu.be/x") == "youtube"
        assert detect_provider("https://player.vimeo.com/video/1") == "vimeo"
        assert detect_provider("https://www.twitch.tv/videos/1") == "twitch"
        assert detect_provider("https://www.tiktok.com/embed/1") == "tiktok"

    def test_file_extension_is_html5(self):
        assert detect_provider("https://cdn.example.com/clip.mp4?token=1") == "html5"

    def test_unknown(self):
        assert detect_provider("https://example.com/watch/1") == "unknown"

    def test_is_video_embed(self):
        assert is_video_embed("https://www.facebook.com/plugins/video.php?href=x")
        assert not is_video_embed("https://www.facebook.com/somepage")
        assert not is_video_embed("https://maps.example.com/embed")


class TestVideoExtractor:
    def test_sources_in_order_and_deduplicated(self):
        videos = VideoExtractor().extract(VIDEO_PAGE, "https://news.example.com/launch")
        assert [(v.type, v.url) for v in videos] == [
            ("og", "https://www.youtube.com/embed/abc123"),
            ("twitter", "https://player.vimeo.com/video/42"),
            ("jsonld", "https://cdn.example.com/countdown.mp4"),
            ("embedded", "https://www.dailymotion.com/embed/video/x8"),
            ("html5", "https://news.example.com/media/liftoff.webm"),
            ("html5", "https://news.example.com/media/liftoff.mp4"),
        ]

    def test_titles_and_providers(self):
        videos = VideoExtractor().extract(VIDEO_PAGE, "https://news.example.com/launch")
        by_url = {v.url: v for v in videos}
        assert by_url["https://www.youtube.com/embed/abc123"].title == "Launch day"
        assert by_url["https://www.youtube.com/embed/abc123"].provider == "youtube"
        assert by_url["https://cdn.example.com/countdown.mp4"].title == "Countdown"
        assert by_url["https://www.dailymotion.com/embed/video/x8"].provider == "dailymotion"
        assert by_url["https://news.example.com/media/liftoff.webm"].provider == "html5"

    def test_iframes_outside_article_ignored(self):
        videos = VideoExtractor().extract(VIDEO_PAGE, "https://news.example.com/launch")
        assert all("sidebar" not in v.url for v in videos)

    def test_page_without_videos(self):
        assert VideoExtractor().extract("<html><body><p>Text only</p></body></html>", "https://x/") == []
