#!/usr/bin/env python3
"""
BBVA Argentina Statement Archiver

Logs into BBVA Argentina home banking, opens the statements page and
downloads every available statement ("resumen") as PDF. Files that already
exist in the output directory are skipped, so the script can be re-run to
pick up new statements only.
"""

import sys
sys.stdout.reconfigure(line_buffering=True)
sys.stderr.reconfigure(line_buffering=True)
import os
import re
import json
import base64
import signal
import argparse
from datetime import datetime
from pathlib import Path

# Try importing playwright
try:
    from playwright.sync_api import sync_playwright, TimeoutError as PlaywrightTimeout
except ImportError:
    print("ERROR: playwright not installed. Run: pip3 install playwright && playwright install firefox")
    sys.exit(1)

# --- Configuration ---
DEFAULT_OUTPUT_DIR = "./bbva-resumenes"
DEFAULT_ENV_FILE = Path(".env")
DEBUG_DIR = Path.home() / ".bbva-archiver" / "debug"

URL_LOGIN = "https://online.bbva.com.ar/fnetcore/login/index.html"
LANDING_ROUTE = "globalposition"
PDF_ENDPOINT = "servicios/cliente/extractos/getPdf"

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36"

# All values in milliseconds
SLOW_MO = 555
TYPE_DELAY = 80
CLICK_DELAY = 90
POST_LOGIN_WAIT = 2000
LOGIN_TIMEOUT = 10000
STATEMENTS_TIMEOUT = 4000
DOWNLOAD_DELAY = 1500

SCOPE_SEARCH_DEPTH = 12

DEBUG_ENABLED: bool = False
INTERRUPTED: bool = False


class Interrupted(Exception):
    """Raised between pipeline steps once SIGINT was received."""


# --- Config ---

def _load_dotenv(path: Path) -> None:
    """Load KEY=VALUE lines into os.environ without overriding existing values."""
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#") or "=" not in s:
            continue
        k, v = s.split("=", 1)
        k = k.strip()
        v = v.strip().strip('"').strip("'")
        if k and k not in os.environ:
            os.environ[k] = v


def require_env(name: str) -> str:
    val = os.environ.get(name)
    if not val:
        print(f"ERROR: Missing environment variable: {name}")
        print("       Create a .env file or export it before running.")
        sys.exit(1)
    return val


def load_config(env_file: Path | None = None, output_dir: str | None = None, visible: bool = False) -> dict:
    """Read credentials and options from the environment (and optional .env)."""
    _load_dotenv(env_file or DEFAULT_ENV_FILE)
    config = {
        "dni": require_env("BBVA_DNI"),
        "usuario": require_env("BBVA_USUARIO"),
        "clave": require_env("BBVA_CLAVE"),
        "out_dir": Path(output_dir or os.environ.get("BBVA_OUT_DIR") or DEFAULT_OUTPUT_DIR).expanduser(),
        "headless": os.environ.get("HEADLESS") != "false",
    }
    if visible:
        config["headless"] = False
    return config


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _write_debug_json(prefix: str, payload) -> Path | None:
    if not DEBUG_ENABLED:
        return None
    _ensure_dir(DEBUG_DIR)
    ts = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
    out = DEBUG_DIR / f"{ts}-{prefix}.json"
    out.write_text(json.dumps(payload, ensure_ascii=False, indent=2))
    return out


# --- Interruption ---

def _handle_sigint(signum, frame):
    global INTERRUPTED
    INTERRUPTED = True
    print("\n\n[main] Interrupt received, closing the browser...", flush=True)
    # A second Ctrl-C aborts immediately
    signal.signal(signal.SIGINT, signal.default_int_handler)


def install_interrupt_handler() -> None:
    signal.signal(signal.SIGINT, _handle_sigint)


def check_interrupted() -> None:
    if INTERRUPTED:
        raise Interrupted()


# --- Statement helpers ---

def closing_date_iso(fecha_cierre: str) -> str:
    """Convert the portal's dd/mm/yyyy closing date to yyyy-mm-dd."""
    dd, mm, yyyy = fecha_cierre.strip().split("/")
    return f"{yyyy}-{mm}-{dd}"


def statement_filename(statement: dict) -> str:
    title = re.sub(r"[/\s,]+", "_", statement["detalle"])
    return f"BBVA_{title}_{closing_date_iso(statement['fechaCierre'])}.pdf"


def _statement_from_raw(raw: dict) -> dict:
    return {
        "detalle": raw["detalle"],
        "fechaCierre": raw["fechaCierre"],
        "reporte": raw["reporte"],
    }


# --- Browser steps ---

def open_browser(p, headless: bool = True):
    """Launch Firefox and return (browser, page) with an es-AR desktop profile."""
    browser = p.firefox.launch(headless=headless, slow_mo=SLOW_MO)
    context = browser.new_context(
        locale="es-AR",
        timezone_id="America/Argentina/Buenos_Aires",
        user_agent=USER_AGENT,
        viewport={"width": 1280, "height": 800},
    )
    page = context.new_page()
    page.add_init_script("Object.defineProperty(navigator, 'webdriver', { get: () => undefined });")
    return browser, page


def login(page, dni: str, usuario: str, clave: str) -> bool:
    """Fill the login form and wait for the global position landing page."""
    print("[login] Signing in...", flush=True)
    page.goto(URL_LOGIN, wait_until="domcontentloaded")

    page.get_by_role("spinbutton", name="Número de documento").press_sequentially(dni, delay=TYPE_DELAY)
    page.get_by_role("textbox", name="Usuario").press_sequentially(usuario, delay=TYPE_DELAY)
    page.get_by_role("textbox", name="Clave").press_sequentially(clave, delay=TYPE_DELAY)
    page.get_by_role("button", name="Ingresar").click(delay=CLICK_DELAY)

    try:
        page.wait_for_url(lambda url: LANDING_ROUTE in url, timeout=LOGIN_TIMEOUT)
        page.wait_for_load_state("load", timeout=LOGIN_TIMEOUT)
    except PlaywrightTimeout:
        print(f"[login] ERROR: Landing page not reached within {LOGIN_TIMEOUT // 1000}s (still at {page.url}).")
        print("[login] Check your credentials or run with --visible to watch the browser.")
        return False

    page.wait_for_timeout(POST_LOGIN_WAIT)
    print("[login] Signed in.", flush=True)
    return True


def go_to_statements(page) -> bool:
    """Open 'Resúmenes y tarjetas' -> 'Resúmenes' and wait for the statement cards."""
    try:
        page.get_by_role("button", name="Resúmenes y tarjetas").click(delay=CLICK_DELAY)
        page.get_by_role("link", name="Resúmenes", exact=True).click(delay=CLICK_DELAY)
        page.wait_for_selector("bbva-card-resumen", timeout=STATEMENTS_TIMEOUT)
    except PlaywrightTimeout:
        print("[statements] ERROR: Statements page did not load (no bbva-card-resumen element).")
        return False

    print("[statements] Statements page loaded.", flush=True)
    return True


# Walks the AngularJS scope tree for the summaries controller; the statement
# list exists only in client state.
_FETCH_STATEMENTS_JS = """(maxDepth) => {
    const ng = window.angular;
    if (!ng) throw new Error("angular not found on page");
    const root = ng.element(document).injector().get("$rootScope");

    let ctrl = null;
    (function walk(s, depth) {
        if (depth > maxDepth || ctrl) return;
        if (s.sumCtrl) { ctrl = s.sumCtrl; return; }
        if (s.$$childHead) walk(s.$$childHead, depth + 1);
        if (s.$$nextSibling) walk(s.$$nextSibling, depth + 1);
    })(root, 0);

    if (!ctrl) throw new Error("sumCtrl not found - the statements page may not have finished loading");

    const data = (ctrl.operations && ctrl.operations.data) || {};
    const cards = data.cardSummaries || [];
    const past = data.pastSummaries || [];
    return [...cards, ...past].map((s) => ({
        detalle: s.detalle,
        fechaCierre: s.fechaCierre,
        reporte: s.reporte,
    }));
}"""

# Uses the site's own $http so session and CSRF headers are attached.
# ArrayBuffer is returned base64-encoded to cross the evaluate boundary.
_FETCH_PDF_JS = """async ([url, reporte]) => {
    const $http = window.angular.element(document).injector().get("$http");
    const resp = await $http({
        method: "POST",
        url: url,
        data: { reporte },
        responseType: "arraybuffer",
    });
    const bytes = new Uint8Array(resp.data);
    let bin = "";
    for (let i = 0; i < bytes.length; i++) bin += String.fromCharCode(bytes[i]);
    return btoa(bin);
}"""


def fetch_statements(page) -> list[dict] | None:
    """Read the statement list out of the page's AngularJS state."""
    try:
        raw = page.evaluate(_FETCH_STATEMENTS_JS, SCOPE_SEARCH_DEPTH)
    except Exception as e:
        print(f"[statements] ERROR: Could not read statements: {e}")
        return None

    _write_debug_json("statements-raw", raw)
    try:
        statements = [_statement_from_raw(s) for s in raw or []]
    except KeyError as e:
        print(f"[statements] ERROR: Statement without field {e}: portal data changed?")
        return None
    print(f"\n[statements] Found {len(statements)} statement(s)\n", flush=True)
    return statements


def fetch_pdf(page, reporte: str) -> bytes:
    b64 = page.evaluate(_FETCH_PDF_JS, [PDF_ENDPOINT, reporte])
    return base64.b64decode(b64)


def download_statements(page, statements: list[dict], output_dir: Path) -> dict:
    """Download each statement not yet present in output_dir.

    Returns a dict with the downloaded/skipped/failed filenames.
    """
    output_dir = Path(output_dir)
    _ensure_dir(output_dir)

    downloaded: list[str] = []
    skipped: list[str] = []
    failed: list[str] = []
    total = len(statements)

    for i, s in enumerate(statements, 1):
        filename = statement_filename(s)
        filepath = output_dir / filename
        tag = f"[{i}/{total}]"

        if filepath.exists():
            print(f"[download] {tag} Already exists: {filename}", flush=True)
            skipped.append(filename)
            continue

        if INTERRUPTED:
            break

        try:
            content = fetch_pdf(page, s["reporte"])
            filepath.write_bytes(content)
            downloaded.append(filename)
            print(f"[download] {tag} {filename} ({len(content) / 1024:.0f} KB)", flush=True)
        except Exception as e:
            if INTERRUPTED:
                break
            failed.append(filename)
            print(f"[download] {tag} FAILED: {filename}", flush=True)
            print(f"[download]     {e}", flush=True)

        if INTERRUPTED:
            break
        page.wait_for_timeout(DOWNLOAD_DELAY)

    return {
        "total": total,
        "downloaded": downloaded,
        "skipped": skipped,
        "failed": failed,
        "interrupted": INTERRUPTED,
        "out_dir": str(output_dir),
    }


def print_summary(result: dict) -> None:
    print("\n" + "_" * 40)
    print(f"  Downloaded : {len(result['downloaded'])}")
    print(f"  Skipped    : {len(result['skipped'])}  (already present)")
    print(f"  Failed     : {len(result['failed'])}")
    print(f"  Folder     : {result['out_dir']}")
    print("_" * 40)

    if result["failed"]:
        print("\nFailed files:")
        for name in result["failed"]:
            print(f"  - {name}")


# --- Commands ---

def _open_statements(page, config: dict) -> list[dict] | None:
    """Login, navigate and enumerate; None on a fatal step failure."""
    if not login(page, config["dni"], config["usuario"], config["clave"]):
        return None
    check_interrupted()
    if not go_to_statements(page):
        return None
    check_interrupted()
    return fetch_statements(page)


def cmd_download(config: dict, json_output: bool = False) -> None:
    """Download all statements that are not yet in the output directory."""
    _ensure_dir(config["out_dir"])
    print(f"[main] Saving statements to {config['out_dir']}", flush=True)

    install_interrupt_handler()
    with sync_playwright() as p:
        browser, page = open_browser(p, headless=config["headless"])
        try:
            statements = _open_statements(page, config)
            if statements is None:
                sys.exit(1)
            check_interrupted()

            result = download_statements(page, statements, config["out_dir"])
            if json_output:
                print(json.dumps(result, ensure_ascii=False, indent=2))
            else:
                print_summary(result)
            check_interrupted()
        finally:
            browser.close()


def cmd_list(config: dict, json_output: bool = False) -> None:
    """List available statements and whether they were already downloaded."""
    install_interrupt_handler()
    with sync_playwright() as p:
        browser, page = open_browser(p, headless=config["headless"])
        try:
            statements = _open_statements(page, config)
            if statements is None:
                sys.exit(1)
        finally:
            browser.close()

    rows = []
    for s in statements:
        filename = statement_filename(s)
        rows.append({
            **s,
            "filename": filename,
            "exists": (Path(config["out_dir"]) / filename).exists(),
        })

    if json_output:
        print(json.dumps(rows, ensure_ascii=False, indent=2))
        return

    for r in rows:
        marker = "*" if r["exists"] else " "
        print(f"{marker} {r['fechaCierre']:<10}  {r['detalle']:<40}  {r['filename']}")
    print(f"\n{len(rows)} statement(s), {sum(1 for r in rows if r['exists'])} already downloaded (*)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="BBVA Argentina statement archiver")
    parser.add_argument("--visible", action="store_true", help="Show browser (same as HEADLESS=false)")
    parser.add_argument("--debug", action="store_true", help="Save raw statement payloads to ~/.bbva-archiver/debug (default: off)")
    parser.add_argument("--env-file", type=Path, default=DEFAULT_ENV_FILE, help="Path to .env with BBVA_* credentials (default: ./.env)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    download_parser = subparsers.add_parser("download", help="Download all statement PDFs")
    download_parser.add_argument("--out", dest="output", help="Output directory (default: BBVA_OUT_DIR or ./bbva-resumenes)")
    download_parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    list_parser = subparsers.add_parser("list", help="List available statements")
    list_parser.add_argument("--out", dest="output", help="Directory to check for existing files")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)

    global DEBUG_ENABLED
    DEBUG_ENABLED = bool(args.debug)

    config = load_config(env_file=args.env_file, output_dir=args.output, visible=args.visible)

    try:
        if args.command == "download":
            cmd_download(config, json_output=args.json)
        elif args.command == "list":
            cmd_list(config, json_output=args.json)
    except (Interrupted, KeyboardInterrupt):
        print("[main] Stopped by user.")
        sys.exit(0)
    except Exception as e:
        if INTERRUPTED:
            sys.exit(0)
        print(f"\n[main] FATAL: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
