# arch_provision/__main__.py
from arch_provision.cli import app


def main():
    """
    Main application
    """
    app(prog_name="arch-provision")


if __name__ == "__main__":
    main()
