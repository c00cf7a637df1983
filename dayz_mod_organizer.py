import os
import re
import ssl
import sys
import html
import shutil
import argparse
from dataclasses import dataclass, field

import requests
from requests.adapters import HTTPAdapter

CONFIG = {
    "metadata_files": ("meta.cpp", "mod.cpp"),  # checked in this order
    "key_dir_names": ("key", "keys"),           # matched case-insensitively
    "key_suffix": ".bikey",
    "use_web_lookup": True,                     # fall back to the workshop page title
    "request_timeout": 30                       # None = wait forever
}

SERVER_APPID = "223350"
GAME_APPID = "221100"

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
SERVER_ROOT = os.path.join(SCRIPT_DIR, "dayz", SERVER_APPID)

WORKSHOP_URL = "https://steamcommunity.com/workshop/filedetails/?id={}"
UA = {"User-Agent": "Mozilla/5.0"}

RX_CPP_NAME = re.compile(r'^\s*name\s*=\s*"(.*)"')
RX_WORKSHOP_TITLE = re.compile(r'<div class="workshopItemTitle">(.*?)</div>', re.S)

INVALID_FS_CHARS = '\\/:*?"<>|'


@dataclass
class ModResult:
    mod_id: str
    name: str | None = None
    destination: str | None = None
    keys_copied: int = 0
    status: str = "skipped"


@dataclass
class RunSummary:
    results: list = field(default_factory=list)
    workshop_removed: bool = False

    def count(self, status):
        return sum(1 for r in self.results if r.status == status)

    @property
    def keys_copied(self):
        return sum(r.keys_copied for r in self.results)


# Paths
def workshop_root(server_root: str) -> str:
    return os.path.join(server_root, "steamapps", "workshop")

def content_dir_for_app(server_root: str, appid: str = GAME_APPID) -> str:
    """Path where SteamCMD puts workshop content for appid."""
    return os.path.join(workshop_root(server_root), "content", str(appid))

def keys_dir(server_root: str) -> str:
    return os.path.join(server_root, "keys")

def list_mod_folders(content_dir: str) -> list[str]:
    if not os.path.isdir(content_dir):
        return []
    return sorted(n for n in os.listdir(content_dir) if os.path.isdir(os.path.join(content_dir, n)))


# HTTP
def tls12_context() -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    try:
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    except (AttributeError, ValueError):
        pass
    return ctx

class TLS12Adapter(HTTPAdapter):
    """HTTPS adapter that refuses anything older than TLS 1.2, proxied or not."""

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = tls12_context()
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = tls12_context()
        return super().proxy_manager_for(proxy, **proxy_kwargs)

def make_session() -> requests.Session:
    s = requests.Session()
    s.headers.update(UA)
    s.mount("https://", TLS12Adapter())
    return s

def fetch_workshop_title(mod_id: str, session) -> str | None:
    """
    Scrape the item title from the public workshop page.
    Returns None on any network error or when the title div is missing.
    """
    url = WORKSHOP_URL.format(mod_id)
    try:
        r = session.get(url, timeout=CONFIG["request_timeout"])
        r.raise_for_status()
        text = r.text
    except requests.RequestException as e:
        print(f"[warn] Workshop lookup failed for {mod_id}: {e}")
        return None
    m = RX_WORKSHOP_TITLE.search(text)
    if not m:
        print(f"[warn] No workshopItemTitle on page for {mod_id}")
        return None
    return html.unescape(m.group(1)).strip() or None


# Name resolution
def read_cpp_name(path: str) -> str | None:
    """Return the value of the first `name = "..."` line, or None."""
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            for line in f:
                m = RX_CPP_NAME.match(line)
                if m:
                    return m.group(1)
    except OSError as e:
        print(f"[warn] Could not read {path}: {e}")
    return None

def resolve_mod_name(mod_dir: str, mod_id: str, get_session) -> str | None:
    """
    meta.cpp, then mod.cpp, then the workshop page. First hit wins.
    `get_session` is only called when the web lookup is actually needed.
    """
    for fn in CONFIG["metadata_files"]:
        name = read_cpp_name(os.path.join(mod_dir, fn))
        if name:
            return name
    if CONFIG["use_web_lookup"]:
        return fetch_workshop_title(mod_id, get_session())
    return None

def sanitize_name(s: str) -> str:
    return "".join("-" if c in INVALID_FS_CHARS else c for c in s)

def destination_name(name: str) -> str:
    return "@" + sanitize_name(name)


# Move + keys
def move_mod(src: str, dest: str):
    """Replace whatever sits at dest with src. No merge."""
    if os.path.isdir(dest) and not os.path.islink(dest):
        shutil.rmtree(dest)
    elif os.path.lexists(dest):
        os.remove(dest)
    shutil.move(src, dest)

def find_key_dirs(mod_dir: str) -> list[str]:
    wanted = {n.lower() for n in CONFIG["key_dir_names"]}
    out = []
    for name in sorted(os.listdir(mod_dir)):
        full = os.path.join(mod_dir, name)
        if name.lower() in wanted and os.path.isdir(full):
            out.append(full)
    return out

def copy_keys(mod_dir: str, dest_keys_dir: str) -> int:
    """Copy every .bikey under the mod's key/keys folders. Returns count copied."""
    suffix = CONFIG["key_suffix"].lower()
    copied = 0
    for kdir in find_key_dirs(mod_dir):
        for root, _, files in os.walk(kdir):
            for fn in files:
                if os.path.splitext(fn)[1].lower() != suffix:
                    continue
                shutil.copy2(os.path.join(root, fn), os.path.join(dest_keys_dir, fn))
                copied += 1
    return copied


def process_mod(server_root: str, mod_id: str, get_session, seen_destinations: set) -> ModResult:
    result = ModResult(mod_id=mod_id)
    src = os.path.join(content_dir_for_app(server_root), mod_id)

    name = resolve_mod_name(src, mod_id, get_session)
    if not name:
        print(f"[error] Could not resolve a name for mod {mod_id}; skipping.")
        return result
    result.name = name

    dest = os.path.join(server_root, destination_name(name))
    if dest in seen_destinations:
        print(f"[warn] {os.path.basename(dest)} was already produced this run; {mod_id} replaces it.")
    try:
        move_mod(src, dest)
    except OSError as e:
        print(f"[error] Failed to move {mod_id} -> {dest}: {e}")
        result.status = "failed"
        return result
    seen_destinations.add(dest)
    result.destination = dest
    print(f"[+] {mod_id} -> {os.path.basename(dest)}")

    try:
        result.keys_copied = copy_keys(dest, keys_dir(server_root))
    except OSError as e:
        print(f"[error] Key copy failed for {name} ({mod_id}): {e}")
        result.status = "failed"
        return result
    if result.keys_copied:
        print(f"    copied {result.keys_copied} key(s)")
    result.status = "done"
    return result


def cleanup_workshop(server_root: str) -> bool:
    """
    Drop the whole steamapps/workshop tree once the content dir is empty.
    Returns True if it was removed.
    """
    content_dir = content_dir_for_app(server_root)
    if os.path.isdir(content_dir) and os.listdir(content_dir):
        print(f"[info] {content_dir} still has content; leaving workshop folder in place.")
        return False
    root = workshop_root(server_root)
    if not os.path.isdir(root):
        print(f"[info] Workshop folder {root} not found; nothing to clean.")
        return False
    shutil.rmtree(root)
    print(f"[info] Removed empty workshop folder {root}")
    return True


def check_preconditions(server_root: str):
    """Return an exit code if the run should stop now, else None."""
    if not os.path.isdir(server_root):
        print(f"❌ Server root not found: {server_root}")
        return 1
    content_dir = content_dir_for_app(server_root)
    if not os.path.isdir(content_dir):
        print(f"[info] No workshop content at {content_dir}; nothing to do.")
        return 0
    os.makedirs(keys_dir(server_root), exist_ok=True)
    return None


def organize(server_root: str = SERVER_ROOT, session=None) -> int:
    code = check_preconditions(server_root)
    if code is not None:
        return code

    holder = {"session": session}

    def get_session():
        if holder["session"] is None:
            holder["session"] = make_session()
        return holder["session"]

    summary = RunSummary()
    mod_ids = list_mod_folders(content_dir_for_app(server_root))
    if not mod_ids:
        print("[info] No mods found in workshop content.")
    else:
        print(f"\nFound {len(mod_ids)} mod folder(s).\n")

    seen = set()
    try:
        for mod_id in mod_ids:
            summary.results.append(process_mod(server_root, mod_id, get_session, seen))
    finally:
        # only close a session this run opened
        if session is None and holder["session"] is not None:
            holder["session"].close()

    summary.workshop_removed = cleanup_workshop(server_root)

    print(f"\nDone: {summary.count('done')} | Skipped: {summary.count('skipped')} | "
          f"Failed: {summary.count('failed')} | Keys copied: {summary.keys_copied}")
    if summary.count("skipped") or summary.count("failed"):
        print("⚠️ Some mods were skipped or failed; see messages above.")
    elif mod_ids:
        print("✅ All mods organized.")
    return 0


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Move downloaded DayZ workshop mods into the server folder.")
    # passed by some mod-manager hosts; not used
    p.add_argument("host_arg", nargs="?", default=None)
    p.parse_args(argv)

    print("=== DayZ Workshop Mod Organizer ===")
    return organize(SERVER_ROOT)


if __name__ == "__main__":
    sys.exit(main())
