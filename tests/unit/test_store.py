from __future__ import annotations

import asyncio
import json

import pytest

from visualdiff.core.errors import (
    InvalidArgument,
    UnknownBrowser,
    UnknownBuild,
    UnknownImage,
    UnknownProject,
    UnknownSha,
)
from visualdiff.core.models import BuildStatus
from visualdiff.modules.storage.filesystem import FileSystemStore

GITHUB = {"service": {"name": "github", "options": {"user": "acme", "repository": "web"}}}


async def _project(store: FileSystemStore) -> str:
    return await store.create_project(GITHUB)


@pytest.mark.asyncio
async def test_create_project_round_trip(store: FileSystemStore) -> None:
    project = await store.create_project({**GITHUB, "label": "frontend"})

    assert await store.has_project(project)
    info = await store.get_project_info(project)
    assert info.id == project
    assert info.service is not None and info.service.name == "github"
    assert info.service.options["repository"] == "web"
    assert info.model_extra == {"label": "frontend"}


@pytest.mark.asyncio
async def test_unknown_project_errors(store: FileSystemStore) -> None:
    assert not await store.has_project("missing")
    with pytest.raises(UnknownProject):
        await store.get_project_info("missing")
    with pytest.raises(UnknownProject):
        await store.start_build(project="missing", head="h", base="b", num_browsers=1)


@pytest.mark.asyncio
async def test_start_build_persists_pending_record(store: FileSystemStore) -> None:
    project = await _project(store)

    build = await store.start_build(project=project, head="h1", base="b1", num_browsers=2)

    info = await store.get_build_info(project, build)
    assert info.status is BuildStatus.PENDING
    assert info.num_browsers == 2
    assert info.diffs is None
    assert await store.get_builds_for_sha(project, "h1") == [build]
    assert await store.get_builds_for_sha(project, "b1") == [build]
    record = json.loads(
        (store.root / "project" / project / "builds" / build / "build.json").read_text()
    )
    assert record["numBrowsers"] == 2


@pytest.mark.asyncio
async def test_build_indexed_once_when_head_equals_base(store: FileSystemStore) -> None:
    project = await _project(store)

    build = await store.start_build(project=project, head="same", base="same", num_browsers=1)

    assert await store.get_builds_for_sha(project, "same") == [build]


@pytest.mark.asyncio
async def test_concurrent_builds_keep_every_index_entry(store: FileSystemStore) -> None:
    project = await _project(store)

    builds = await asyncio.gather(
        *(
            store.start_build(project=project, head="h", base=f"b{index}", num_browsers=1)
            for index in range(8)
        )
    )

    assert sorted(await store.get_builds_for_sha(project, "h")) == sorted(builds)
    assert len(store._locks) == 0


@pytest.mark.asyncio
async def test_builds_for_unseen_sha_is_empty(store: FileSystemStore) -> None:
    project = await _project(store)

    assert await store.get_builds_for_sha(project, "never") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("num_browsers", [0, -1, True, "2"])
async def test_start_build_rejects_bad_browser_count(
    store: FileSystemStore, num_browsers: object
) -> None:
    project = await _project(store)
    with pytest.raises(InvalidArgument):
        await store.start_build(project=project, head="h", base="b", num_browsers=num_browsers)


@pytest.mark.asyncio
async def test_update_build_status_semantics(store: FileSystemStore) -> None:
    project = await _project(store)
    build = await store.start_build(project=project, head="h", base="b", num_browsers=1)

    failed = await store.update_build_info(
        project, build, status=BuildStatus.FAILED, diffs={"Chrome": ["a.png"]}
    )
    assert failed.diffs == {"Chrome": ["a.png"]}

    approved = await store.update_build_info(project, build, status=BuildStatus.APPROVED)
    assert approved.status is BuildStatus.APPROVED
    assert approved.diffs == {"Chrome": ["a.png"]}

    success = await store.update_build_info(project, build, status=BuildStatus.SUCCESS)
    assert success.diffs is None
    assert (await store.get_build_info(project, build)).status is BuildStatus.SUCCESS


@pytest.mark.asyncio
async def test_update_unknown_build_raises(store: FileSystemStore) -> None:
    project = await _project(store)
    assert not await store.has_build(project, "nope")
    with pytest.raises(UnknownBuild):
        await store.update_build_info(project, "nope", status=BuildStatus.SUCCESS)


@pytest.mark.asyncio
async def test_save_and_list_images(store: FileSystemStore, make_archive) -> None:
    project = await _project(store)
    archive = make_archive({"home.png": b"h", "menu/open.png": b"m"}, wrapper="out")

    files = await store.save_images(project=project, sha="s", browser="Chrome", archive=archive)

    assert files == ["home.png", "menu/open.png"]
    assert await store.get_browsers_for_sha(project, "s") == ["Chrome"]
    assert await store.get_images_for_sha_browser(project, "s", "Chrome") == files
    assert await store.get_image(project, "s", "Chrome", "menu/open.png") == b"m"


@pytest.mark.asyncio
async def test_reupload_replaces_browser_images(store: FileSystemStore, make_archive) -> None:
    project = await _project(store)
    await store.save_images(
        project=project, sha="s", browser="Chrome", archive=make_archive({"old.png": b"1"})
    )
    await store.save_images(
        project=project, sha="s", browser="Chrome", archive=make_archive({"new.png": b"2"})
    )

    assert await store.get_images_for_sha_browser(project, "s", "Chrome") == ["new.png"]



@pytest.mark.asyncio
async def test_invalid_reupload_keeps_previous_images(
    store: FileSystemStore, make_archive, tmp_path
) -> None:
    project = await _project(store)
    await store.save_images(
        project=project, sha="h1", browser="Chrome", archive=make_archive({"page.png": b"1"})
    )
    corrupt = tmp_path / "corrupt.tar"
    corrupt.write_bytes(b"not a tarball")

    with pytest.raises(InvalidArgument):
        await store.save_images(project=project, sha="h1", browser="Chrome", archive=corrupt)

    assert await store.get_browsers_for_sha(project, "h1") == ["Chrome"]
    assert await store.get_images_for_sha_browser(project, "h1", "Chrome") == ["page.png"]
    assert await store.get_image(project, "h1", "Chrome", "page.png") == b"1"
    sha_dir = store._sha_dir(project, "h1")
    assert [path.name for path in sha_dir.iterdir()] == ["Chrome"]


@pytest.mark.asyncio
async def test_invalid_first_upload_leaves_sha_unknown(store: FileSystemStore, tmp_path) -> None:
    project = await _project(store)
    corrupt = tmp_path / "corrupt.tar"
    corrupt.write_bytes(b"not a tarball")

    with pytest.raises(InvalidArgument):
        await store.save_images(project=project, sha="h1", browser="Chrome", archive=corrupt)

    with pytest.raises(UnknownSha):
        await store.get_browsers_for_sha(project, "h1")


@pytest.mark.asyncio
async def test_missing_sha_browser_and_image(store: FileSystemStore, make_archive) -> None:
    project = await _project(store)
    with pytest.raises(UnknownSha):
        await store.get_browsers_for_sha(project, "s")

    await store.save_images(
        project=project, sha="s", browser="Chrome", archive=make_archive({"a.png": b"1"})
    )
    with pytest.raises(UnknownBrowser):
        await store.get_images_for_sha_browser(project, "s", "Firefox")
    with pytest.raises(UnknownImage):
        await store.get_image(project, "s", "Chrome", "b.png")


@pytest.mark.asyncio
async def test_diff_artifacts(store: FileSystemStore) -> None:
    project = await _project(store)
    build = await store.start_build(project=project, head="h", base="b", num_browsers=1)

    path = await store.save_diff_image(project, build, "Firefox", "dir/page.png", b"diff")

    assert path.read_bytes() == b"diff"
    assert await store.get_diff(project, build, "Firefox", "dir/page.png") == b"diff"
    with pytest.raises(UnknownImage):
        await store.get_diff(project, build, "Firefox", "other.png")
    with pytest.raises(UnknownBuild):
        await store.get_diff(project, "missing", "Firefox", "dir/page.png")


@pytest.mark.asyncio
@pytest.mark.parametrize("image", ["../escape.png", "/abs.png", "a/../../b.png", ""])
async def test_image_names_cannot_escape(store: FileSystemStore, image: str) -> None:
    project = await _project(store)
    with pytest.raises(InvalidArgument):
        await store.get_image(project, "s", "Chrome", image)


@pytest.mark.asyncio
@pytest.mark.parametrize("browser", ["..", ".hidden", "a/b", "build.json", ""])
async def test_browser_names_are_single_segments(
    store: FileSystemStore, make_archive, browser: str
) -> None:
    project = await _project(store)
    with pytest.raises(InvalidArgument):
        await store.save_images(
            project=project, sha="s", browser=browser, archive=make_archive({"a.png": b"1"})
        )
