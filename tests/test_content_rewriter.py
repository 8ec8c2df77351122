import pytest

from common.constants import CIRCULAR_REFERENCE
from exporter.content_rewriter import ContentRewriter, emote_alt_text, make_emote_marker
from exporter.downloader import AssetDownloader

from conftest import PNG_A, PNG_B, make_message

EMOTE_ID = "123456789012345678"
AVATAR_HASH = "0123456789abcdef0123"


@pytest.fixture
def rewriter_factory(fake_discord, http_session, tmp_path):
    def _make():
        dl = AssetDownloader(http_session, cdn_base=fake_discord.cdn_base)
        rw = ContentRewriter(dl, tmp_path / "export")
        rw.ensure_dirs()
        return rw

    return _make


def test_emote_marker_format():
    assert emote_alt_text("bad|name  here") == "badname here"
    assert (
        make_emote_marker("downloaded_files/emotes/x.png", "pepe")
        == "EMOTE_MARKER:downloaded_files/emotes/x.png|pepe"
    )


@pytest.mark.asyncio
async def test_attachment_urls_become_local_paths(fake_discord, rewriter_factory):
    fake_discord.files["attachments/9/pic.png"] = (PNG_A, "image/png")
    url = fake_discord.cdn_url("attachments/9/pic.png")
    msg = make_message(1, content=f"look {url} nice")
    msg["attachments"] = [{"id": "9", "filename": "pic.png", "url": url, "proxy_url": url}]
    rw = rewriter_factory()

    out = await rw.process_batch([msg])

    att = out[0]["attachments"][0]
    assert att["url"].startswith("downloaded_files/attachments/")
    assert att["url"] == att["proxy_url"]
    assert out[0]["content"] == f"look {att['url']} nice"
    # input batch untouched
    assert msg["attachments"][0]["url"] == url
    assert fake_discord.hits["GET /cdn/attachments/9/pic.png"] == 1


@pytest.mark.asyncio
async def test_failed_download_keeps_original_url(fake_discord, rewriter_factory):
    url = fake_discord.cdn_url("attachments/404/gone.png")
    rw = rewriter_factory()
    out = await rw.process_batch([make_message(1, content=url)])
    assert out[0]["content"] == url


@pytest.mark.asyncio
async def test_gif_hosts_are_left_alone(fake_discord, rewriter_factory):
    gif = "https://media.tenor.com/abc/funny.gif"
    rw = rewriter_factory()
    out = await rw.process_batch([make_message(1, content=f"{gif} ok")])
    assert out[0]["content"] == f"{gif} ok"


@pytest.mark.asyncio
async def test_emotes_become_markers(fake_discord, rewriter_factory):
    fake_discord.files[f"emojis/{EMOTE_ID}.png"] = (PNG_B, "image/png")
    rw = rewriter_factory()

    out = await rw.process_batch(
        [make_message(1, content=f"hi <:pepe:{EMOTE_ID}> and <:pepe:{EMOTE_ID}>")]
    )

    content = out[0]["content"]
    assert content.count("EMOTE_MARKER:downloaded_files/emotes/") == 2
    assert content.startswith("hi EMOTE_MARKER:")
    assert content.endswith("|pepe")
    assert fake_discord.hits[f"GET /cdn/emojis/{EMOTE_ID}.png"] == 1
    assert fake_discord.hits[f"HEAD /cdn/emojis/{EMOTE_ID}.png"] == 1


@pytest.mark.asyncio
async def test_unresolvable_emote_keeps_markup(fake_discord, rewriter_factory):
    rw = rewriter_factory()
    text = f"<a:dance:{EMOTE_ID}>"
    out = await rw.process_batch([make_message(1, content=text)])
    assert out[0]["content"] == text


@pytest.mark.asyncio
async def test_avatars_are_downloaded_once_per_user(fake_discord, rewriter_factory):
    fake_discord.files[f"avatars/100/{AVATAR_HASH}.png"] = (PNG_A, "image/png")
    batch = [make_message(i, avatar=AVATAR_HASH) for i in (3, 2, 1)]
    rw = rewriter_factory()

    out = await rw.process_batch(batch)

    paths = {m["author"]["avatar"] for m in out}
    assert len(paths) == 1
    assert next(iter(paths)).startswith("downloaded_files/avatars/")
    assert fake_discord.hits[f"GET /cdn/avatars/100/{AVATAR_HASH}.png"] == 1


@pytest.mark.asyncio
async def test_bad_avatar_hash_becomes_null(fake_discord, rewriter_factory):
    rw = rewriter_factory()
    out = await rw.process_batch(
        [make_message(1, avatar="abc"), make_message(2, author_id="7", avatar=AVATAR_HASH)]
    )
    assert out[0]["author"]["avatar"] is None
    # well-formed hash but the CDN has nothing
    assert out[1]["author"]["avatar"] is None


@pytest.mark.asyncio
async def test_cycles_are_cut(rewriter_factory):
    node = {"name": "loop"}
    node["self"] = node
    shared = {"k": "v"}
    rw = rewriter_factory()

    out = await rw.rewrite({"a": node, "b": [shared, shared]})

    assert out["a"]["self"] == CIRCULAR_REFERENCE
    # the same object twice on different paths is not a cycle
    assert out["b"] == [{"k": "v"}, {"k": "v"}]


@pytest.mark.asyncio
async def test_non_list_batch_is_rejected(rewriter_factory):
    rw = rewriter_factory()
    with pytest.raises(TypeError):
        await rw.process_batch({"id": "1"})
