#!/usr/bin/python3
import sys


def main(argv: list[str] | None = None) -> int:
    """Publish an existing asset (InReview -> Approved -> Published).

    Kept as a tiny example entrypoint so other scripts (and tests) can reuse it
    without triggering network calls at import time.

    Usage: publish_asset.py ASSET_ID [ASSET_VERSION]
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        sys.stderr.write("usage: publish_asset.py ASSET_ID [ASSET_VERSION]\n")
        return 2

    # Easiest to import uam.py if it is in the same directory as this script.
    import uam
    import uam_config

    identity = uam.AssetIdentity(argv[0], argv[1] if len(argv) > 1 else "1")

    try:
        api = uam.Api(uam_config.Configuration.load_default())
        # The service decides whether each transition is allowed; the first
        # refusal stops the walk and leaves the asset in its last status.
        api.publish_asset(identity)
    except uam.UamError as e:
        sys.stderr.write(f"publish failed: {uam.redact_sensitive_text(str(e))}\n")
        return 1

    sys.stdout.write(f"published {identity}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
