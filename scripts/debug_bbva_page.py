#!/usr/bin/env python3
"""
Debug script to inspect the BBVA statements page when enumeration breaks.
Logs in, opens the statements page and dumps what the scope walk can see.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))
from bbva import load_config, open_browser, login, go_to_statements, SCOPE_SEARCH_DEPTH

from playwright.sync_api import sync_playwright

# Lists the controller-like keys of every scope the enumeration walk visits.
_SCOPE_KEYS_JS = """(maxDepth) => {
    const ng = window.angular;
    if (!ng) return null;
    const root = ng.element(document).injector().get("$rootScope");
    const found = [];
    (function walk(s, depth) {
        if (depth > maxDepth) return;
        const keys = Object.keys(s).filter((k) => !k.startsWith("$") && /ctrl/i.test(k));
        if (keys.length) found.push({ id: s.$id, depth, keys });
        if (s.$$childHead) walk(s.$$childHead, depth + 1);
        if (s.$$nextSibling) walk(s.$$nextSibling, depth + 1);
    })(root, 0);
    return found;
}"""


def main():
    config = load_config(visible="--visible" in sys.argv)

    with sync_playwright() as p:
        browser, page = open_browser(p, headless=config["headless"])
        try:
            if not login(page, config["dni"], config["usuario"], config["clave"]):
                sys.exit(1)
            loaded = go_to_statements(page)

            print(f"\nCurrent URL: {page.url}")
            print(f"Page title: {page.title()}")

            print("\n" + "=" * 60)
            print("VISIBLE TEXT:")
            print("=" * 60)
            try:
                print(page.locator("body").inner_text()[:2000])
            except Exception as e:
                print(f"Could not get body text: {e}")
            print("=" * 60)

            print("\n" + "=" * 60)
            print("ELEMENT CHECKS:")
            print("=" * 60)
            print(f"Statements page loaded: {loaded}")
            print(f"bbva-card-resumen count: {page.locator('bbva-card-resumen').count()}")
            print(f"angular present: {page.evaluate('() => !!window.angular')}")

            scopes = page.evaluate(_SCOPE_KEYS_JS, SCOPE_SEARCH_DEPTH)
            if scopes is None:
                print("No angular injector on page.")
            else:
                print(f"Scopes with controllers (depth <= {SCOPE_SEARCH_DEPTH}):")
                for s in scopes:
                    print(f"  scope {s['id']} (depth {s['depth']}): {', '.join(s['keys'])}")
            print("=" * 60)

        except Exception as e:
            print(f"ERROR: {e}")
            import traceback
            traceback.print_exc()
            sys.exit(1)
        finally:
            browser.close()


if __name__ == "__main__":
    main()
