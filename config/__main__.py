"""Command line interface for testing configuration loading"""
import argparse
import sys

from . import load_config, SettingsError

SECRET_KEYS = ('admin_token', 'webhook_signing_key')


def main() -> int:
    """Display the validated configuration with secrets masked"""
    parser = argparse.ArgumentParser(description="Validate settings.conf and print the result")
    parser.add_argument('--settings', default='.', help="Directory holding settings.conf")
    args = parser.parse_args()

    try:
        settings = load_config(args.settings)
    except SettingsError as e:
        print(str(e), file=sys.stderr)
        return 1

    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in sorted(settings.items()):
        if key in SECRET_KEYS and value:
            value = '********'
        print(f"{key}: {value}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
