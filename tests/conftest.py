import pytest

from ytdlp_wrapper.store import Store
from ytdlp_wrapper.url_extractor import PlaylistInfo, VideoInfo


@pytest.fixture
def store(tmp_path):
    db = Store(tmp_path / "db" / "downloads.db")
    yield db
    db.close()


def make_snapshot(url, video_ids, title="My List", channel="Chan"):
    """Builds a playlist snapshot with one video per id, in the given order."""
    videos = [
        VideoInfo(
            url=f"https://www.youtube.com/watch?v={video_id}",
            video_id=video_id,
            title=f"Video {video_id}",
            channel=channel,
            channel_url="https://www.youtube.com/@chan",
            index=position,
        )
        for position, video_id in enumerate(video_ids, start=1)
    ]
    return PlaylistInfo(url=url, title=title, channel=channel,
                        channel_url="https://www.youtube.com/@chan", videos=videos)
