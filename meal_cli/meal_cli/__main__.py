"""Entry point for `python -m meal_cli` and the `mealctl` console script."""

from __future__ import annotations

from meal_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
