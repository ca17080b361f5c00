if __name__ == "__main__":
    try:
        from lantern.app import run
        run()
    except ModuleNotFoundError as e:
        if "textual" in str(e) or "psutil" in str(e):
            import sys
            print("Missing dependency. Install the project first: pip install -e .", file=sys.stderr)
            sys.exit(1)
        raise
