from __future__ import annotations

import asyncio
import os
from pathlib import Path

import httpx
import pytest

from coxy.common.settings import ResolverStrategy
from coxy.image_proxy.pipeline import RequestPipeline, status_page
from coxy.image_proxy.storage import TEMP_PREFIX

from conftest import read_body

IMAGE_PATH = "/sig/600x600/smart/discogs-images/R-1507297-1370212405-8548.jpeg.jpg"
SHARDED_FILE = "images/R/15/07/R-1507297/R-1507297-1370212405-8548.jpeg"
RATE_HEADERS = {"X-RateLimit-Limit": "60", "X-RateLimit-Remaining": "59", "X-RateLimit-Reset": "60"}


def _tree(base: Path) -> list[str]:
    return sorted(str(p.relative_to(base)) for p in base.rglob("*"))


@pytest.mark.asyncio
@pytest.mark.parametrize("request_path", ["", None, "/images/../../etc/passwd", "/images/..", "/images/a\x00.jpg"])
async def test_invalid_request_touches_nothing(make_pipeline, cache_base: Path, origin, request_path) -> None:
    pipeline: RequestPipeline = make_pipeline()
    response = await pipeline.handle(request_path)

    assert response.status_code == 400
    assert response.body == status_page(400, "Bad Request")
    assert _tree(cache_base) == []
    assert origin.requests == []


@pytest.mark.asyncio
async def test_unrecognised_path_is_not_found(make_pipeline, origin) -> None:
    response = await make_pipeline().handle("/sig/thumbs/a.jpg")
    assert response.status_code == 404
    assert origin.requests == []


@pytest.mark.asyncio
async def test_symlink_escape_is_forbidden(make_pipeline, cache_base: Path, tmp_path: Path, origin) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.jpg").write_bytes(b"secret")
    (cache_base / "images").mkdir()
    os.symlink(outside, cache_base / "images" / "link")

    response = await make_pipeline().handle("/sig/images/link/secret.jpg", "203.0.113.9")

    assert response.status_code == 403
    assert response.file is None
    assert origin.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize("request_path", ["/.", "/", "/./"])
async def test_cache_base_itself_is_forbidden(
    make_pipeline, cache_base: Path, tmp_path: Path, origin, request_path: str
) -> None:
    origin.serve("/", content=b"root")

    response = await make_pipeline(ResolverStrategy.SHARDED_BY_ID).handle(request_path)

    assert response.status_code == 403
    assert origin.requests == []
    assert sorted(p.name for p in tmp_path.iterdir()) == ["cache"]
    assert _tree(cache_base) == []


@pytest.mark.asyncio
async def test_fresh_hit_served_from_disk(make_pipeline, cache_base: Path, origin) -> None:
    target = cache_base / SHARDED_FILE
    target.parent.mkdir(parents=True)
    target.write_bytes(b"cached image")

    pipeline = make_pipeline(ResolverStrategy.SHARDED_BY_ID, ttl_seconds=3600)
    response = await pipeline.handle(IMAGE_PATH)

    assert response.status_code == 200
    assert await read_body(response) == b"cached image"
    assert response.header("Content-Type") == "image/jpeg"
    assert response.header("Content-Length") == "12"
    assert response.header("Cache-Control") == "max-age=3600"
    assert response.header("Last-Modified").endswith("GMT")
    assert response.header("Expires").endswith("GMT")
    assert origin.requests == []


@pytest.mark.asyncio
async def test_miss_fetches_populates_and_serves(make_pipeline, cache_base: Path, origin) -> None:
    origin.serve(IMAGE_PATH, content=b"fresh image", headers=RATE_HEADERS)
    pipeline = make_pipeline(ResolverStrategy.SHARDED_BY_ID)

    response = await pipeline.handle(IMAGE_PATH)

    assert response.status_code == 200
    assert await read_body(response) == b"fresh image"
    assert ("X-RateLimit-Remaining", "59") in response.headers
    assert ("X-RateLimit-Reset", "60") in response.headers
    assert (cache_base / SHARDED_FILE).read_bytes() == b"fresh image"
    assert origin.requests[0].url.path == IMAGE_PATH

    again = await pipeline.handle(IMAGE_PATH)
    assert await read_body(again) == b"fresh image"
    assert len(origin.requests) == 1


@pytest.mark.asyncio
async def test_stale_file_is_refetched(make_pipeline, cache_base: Path, origin, clock) -> None:
    target = cache_base / SHARDED_FILE
    target.parent.mkdir(parents=True)
    target.write_bytes(b"old")
    os.utime(target, (clock.now - 120, clock.now - 120))
    origin.serve(IMAGE_PATH, content=b"new")

    response = await make_pipeline(ResolverStrategy.SHARDED_BY_ID, ttl_seconds=60).handle(IMAGE_PATH)

    assert await read_body(response) == b"new"
    assert len(origin.requests) == 1


@pytest.mark.asyncio
async def test_origin_error_forwarded_and_not_cached(make_pipeline, cache_base: Path, origin) -> None:
    origin.serve("/sig/images/missing.png", status_code=404, headers={"X-RateLimit-Remaining": "10"})

    response = await make_pipeline().handle("/sig/images/missing.png")

    assert response.status_code == 404
    assert response.body == b"<html><head><title>404 Not Found</title></head><body><h1>404 Not Found</h1></body></html>"
    assert response.header("X-RateLimit-Remaining") == "10"
    assert not (cache_base / "images" / "missing.png").exists()


@pytest.mark.asyncio
async def test_exhausted_limit_short_circuits(make_pipeline, origin, clock) -> None:
    origin.serve(
        "/sig/images/a.png",
        status_code=429,
        headers={"X-RateLimit-Limit": "60", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "120"},
    )
    clock.now = 1_700_000_000.0
    pipeline = make_pipeline()

    first = await pipeline.handle("/sig/images/a.png")
    assert first.status_code == 429
    assert pipeline.limiter.is_limited(clock())

    clock.advance(1)
    second = await pipeline.handle("/sig/images/b.png")

    assert second.status_code == 503
    assert second.header("Retry-After") == "119"
    assert second.header("X-RateLimit-Reset") == "119"
    assert second.header("X-RateLimit-Remaining") == "0"
    assert len(origin.requests) == 1

    clock.advance(120)
    origin.serve("/sig/images/b.png", content=b"b")
    third = await pipeline.handle("/sig/images/b.png")
    assert third.status_code == 200
    assert await read_body(third) == b"b"


@pytest.mark.asyncio
async def test_fresh_hits_ignore_rate_limit(make_pipeline, cache_base: Path, clock) -> None:
    target = cache_base / "images" / "a.png"
    target.parent.mkdir()
    target.write_bytes(b"png")
    pipeline = make_pipeline()
    pipeline.limiter.observe(clock(), 60, 0, 600)

    response = await pipeline.handle("/sig/images/a.png")
    assert response.status_code == 200
    await read_body(response)


@pytest.mark.asyncio
@pytest.mark.parametrize("exc_type, expected", [(httpx.ReadTimeout, 504), (httpx.ConnectError, 502)])
async def test_network_failures_leave_no_cache_file(make_pipeline, cache_base: Path, origin, exc_type, expected) -> None:
    origin.fail("/sig/images/a.png", exc_type)

    response = await make_pipeline().handle("/sig/images/a.png")

    assert response.status_code == expected
    assert not (cache_base / "images" / "a.png").exists()


class StalledStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"partial"
        raise httpx.ReadTimeout("stalled")


@pytest.mark.asyncio
async def test_body_timeout_leaves_no_partial_file(make_pipeline, cache_base: Path, origin) -> None:
    origin.routes["/sig/images/a.png"] = lambda request: httpx.Response(200, stream=StalledStream())

    response = await make_pipeline().handle("/sig/images/a.png")

    assert response.status_code == 504
    images = cache_base / "images"
    assert not (images / "a.png").exists()
    assert not any(p.name.startswith(TEMP_PREFIX) for p in images.iterdir())


@pytest.mark.asyncio
async def test_storage_failure_returns_server_error(make_pipeline, cache_base: Path, origin) -> None:
    (cache_base / "images").write_bytes(b"a file where a directory should be")
    origin.serve("/sig/images/sub/a.png", content=b"png", headers=RATE_HEADERS)

    response = await make_pipeline().handle("/sig/images/sub/a.png")

    assert response.status_code == 500
    assert response.header("X-RateLimit-Limit") == "60"


@pytest.mark.asyncio
async def test_concurrent_cold_requests_share_one_fetch(make_pipeline, origin) -> None:
    origin.serve(IMAGE_PATH, content=b"shared image" * 1000)
    release = origin.hold()
    pipeline = make_pipeline(ResolverStrategy.SHARDED_BY_ID)

    tasks = [asyncio.create_task(pipeline.handle(IMAGE_PATH)) for _ in range(8)]
    await origin.started.wait()
    for _ in range(5):
        await asyncio.sleep(0)
    assert pipeline.in_flight == 1
    release.set()
    responses = await asyncio.gather(*tasks)

    assert len(origin.requests) == 1
    bodies = [await read_body(response) for response in responses]
    assert all(response.status_code == 200 for response in responses)
    assert set(bodies) == {b"shared image" * 1000}
    assert pipeline.in_flight == 0


@pytest.mark.asyncio
async def test_concurrent_requests_share_origin_failure(make_pipeline, origin) -> None:
    release = origin.hold()
    pipeline = make_pipeline()

    tasks = [asyncio.create_task(pipeline.handle("/sig/images/gone.png")) for _ in range(4)]
    await origin.started.wait()
    release.set()
    responses = await asyncio.gather(*tasks)

    assert len(origin.requests) == 1
    assert [response.status_code for response in responses] == [404] * 4


@pytest.mark.asyncio
async def test_readers_never_see_partial_file(make_pipeline, cache_base: Path, origin, clock) -> None:
    target = cache_base / "images" / "a.png"
    target.parent.mkdir()
    target.write_bytes(b"A" * 4096)
    os.utime(target, (clock.now - 7200, clock.now - 7200))
    origin.serve("/sig/images/a.png", content=b"B" * 8192)
    pipeline = make_pipeline(ttl_seconds=3600)

    reader = pipeline.store.read(target)
    response = await pipeline.handle("/sig/images/a.png")

    old_bytes = b"".join([chunk async for chunk in reader.iter_chunks()])
    assert old_bytes == b"A" * 4096
    assert await read_body(response) == b"B" * 8192
