import argparse
import logging
import mimetypes
import time
from pathlib import Path

import requests

from splitscan.client.poller import ReceiptPoller
from splitscan.core.logging import setup_logging
from splitscan.models.enums import ReceiptStatus

IMG_EXTS = {".jpg", ".jpeg", ".png", ".webp"}


def register(base_url: str, username: str, password: str) -> None:
    url = f"{base_url}/auth/register"
    r = requests.post(url, json={"username": username, "password": password}, timeout=20)
    if r.status_code in (200, 201):
        return
    if r.status_code == 400 and "already exists" in r.text.lower():
        return
    raise RuntimeError(f"register failed: {r.status_code} {r.text}")


def login(base_url: str, username: str, password: str) -> str:
    url = f"{base_url}/auth/login"
    r = requests.post(
        url,
        data={"username": username, "password": password},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=20,
    )
    if r.status_code != 200:
        raise RuntimeError(f"login failed: {r.status_code} {r.text}")
    return r.json()["access_token"]


def upload_receipt(base_url: str, token: str, file_path: Path) -> dict:
    url = f"{base_url}/receipts"
    headers = {"Authorization": f"Bearer {token}"}

    mime, _ = mimetypes.guess_type(str(file_path))
    mime = (mime or "image/jpeg").lower()

    with file_path.open("rb") as f:
        r = requests.post(url, headers=headers, files={"file": (file_path.name, f, mime)}, timeout=60)

    if r.status_code != 201:
        raise RuntimeError(f"upload failed: {r.status_code} {r.text}")
    return r.json()


def iter_images(folder: Path):
    for p in sorted(folder.rglob("*")):
        if p.is_file() and p.suffix.lower() in IMG_EXTS:
            yield p


def main():
    ap = argparse.ArgumentParser(description="Upload a folder of receipt images")
    ap.add_argument("--base-url", default="http://127.0.0.1:8000")
    ap.add_argument("--folder", required=True, help="Folder with receipt images")
    ap.add_argument("--username", default="bulk_user")
    ap.add_argument("--password", default="secret123")
    ap.add_argument("--limit", type=int, default=0, help="0 = no limit")
    ap.add_argument("--sleep", type=float, default=0.0, help="Sleep between uploads (seconds)")
    ap.add_argument("--wait", action="store_true", help="Poll each receipt until processing finishes")
    ap.add_argument("--interval", type=float, default=3.0, help="Polling interval (seconds)")
    ap.add_argument("--max-polls", type=int, default=60, help="Polls per receipt before giving up")
    args = ap.parse_args()

    setup_logging("splitscan-bulk-upload")
    log = logging.getLogger("bulk_upload")

    folder = Path(args.folder).expanduser().resolve()
    if not folder.exists():
        raise SystemExit(f"Folder not found: {folder}")

    register(args.base_url, args.username, args.password)
    token = login(args.base_url, args.username, args.password)
    log.info("logged in as %s", args.username)

    poller = ReceiptPoller(args.base_url, token, interval=args.interval, max_attempts=args.max_polls)

    uploaded = []
    failures = 0

    for i, img in enumerate(iter_images(folder), start=1):
        if args.limit and i > args.limit:
            break

        try:
            resp = upload_receipt(args.base_url, token, img)
        except (requests.RequestException, RuntimeError) as e:
            failures += 1
            log.error("file=%s upload failed: %s", img, e)
            continue

        rid = int(resp["id"])
        log.info("%04d id=%s file=%s status=%s job=%s", i, rid, img.name, resp.get("status"), resp.get("job_id"))
        uploaded.append((rid, img))

        if args.wait:
            result = poller.wait(rid)
            receipt = result.receipt or {}
            if result.timed_out:
                log.warning("   -> still %s after %d polls", receipt.get("status"), result.attempts)
            elif result.status is ReceiptStatus.READY:
                log.info(
                    "   -> Ready merchant=%s total=%s items=%d",
                    receipt.get("merchant_name"), receipt.get("total"), len(receipt.get("items") or []),
                )
            else:
                log.warning("   -> %s error=%s", receipt.get("status"), receipt.get("error_message"))

        if args.sleep > 0:
            time.sleep(args.sleep)

    log.info("uploaded: %d, failures: %d", len(uploaded), failures)
    if not args.wait and uploaded:
        log.info("first 10 receipt_ids: %s", [rid for rid, _ in uploaded[:10]])


if __name__ == "__main__":
    main()
