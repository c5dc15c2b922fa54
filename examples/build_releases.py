"""
Example: build the latest Lua releases in parallel

Fetches the list of official Lua releases, picks the latest release of the
5.3, 5.2 and 5.1 branches, then downloads and builds them concurrently.

Usage:

    python examples/build_releases.py            # latest of each branch
    python examples/build_releases.py 5.3.6 5.1.5
"""

import re
import sys
from pathlib import Path

import hoist

RELEASES_URL = "http://www.lua.org/ftp/"
BRANCHES = ("5.3", "5.2", "5.1")


async def fetch_page(url):
    """Return the contents of a web page."""
    chunks = []
    await hoist.fetch(url).pipe(hoist.to_list(chunks)).wait_finish()
    return b"".join(chunks).decode("utf-8", "replace")


async def get_lua_releases():
    """Return releases newest first, as a dict of version -> release info."""
    html = await fetch_page(RELEASES_URL)
    releases = {}
    for filename, version in re.findall(r'HREF="(lua-([\d.]+)\.tar\.gz)"', html):
        releases.setdefault(
            version,
            {"version": version, "filename": filename, "url": RELEASES_URL + filename},
        )
    return releases


def get_dir(name):
    path = Path.cwd() / name
    path.mkdir(exist_ok=True)
    return path


def elapsed(t0):
    return f"{(hoist.now() - t0) / 1000:.2f}s"


async def download(release):
    print(f"Downloading {release['url']}")
    dest = get_dir("archives") / release["filename"]
    await hoist.fetch(release["url"]).pipe(hoist.write_to(dest)).wait_finish()
    return dest


async def build_release(release):
    t0 = hoist.now()
    archive = await download(release)
    await hoist.sh(f"tar -xzf {archive}")
    await hoist.sh(f"cd lua-{release['version']} && make generic > build.log")
    print(f"Lua {release['version']} built in {elapsed(t0)}")


async def build_versions(versions):
    t0 = hoist.now()
    releases = await get_lua_releases()
    futures = []
    for version in versions:
        if not version.startswith("5"):
            hoist.report("fatal: version must be >= 5.x (${1} is too old)", version)
        release = releases.get(version)
        if release is None:
            hoist.report("fatal: no such release '${1}'", version)
        futures.append(hoist.spawn_task(build_release, release))
    await hoist.wait_all(futures)
    print(f"Total time {elapsed(t0)}")


async def latest_versions():
    releases = await get_lua_releases()
    versions = []
    pending = set(BRANCHES)
    for version in releases:
        branch = version[:3]
        if branch in pending:
            print(f"Latest {branch} release is {version}")
            pending.discard(branch)
            versions.append(version)
    return versions


async def main(versions):
    if not versions:
        versions = await latest_versions()
    await build_versions(versions)


if __name__ == "__main__":
    hoist.setup_logging()
    try:
        hoist.run(main, sys.argv[1:])
    except hoist.HoistError as e:
        print(e, file=sys.stderr)
        sys.exit(1)
