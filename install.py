#!/usr/bin/env python3
"""Set up a local octo-bot checkout.

Usage:
    python install.py          # Runtime install
    python install.py --dev    # Editable install with the test extra
"""

import os
import platform
import shutil
import subprocess
import sys

MIN_PYTHON = (3, 11)
TEMPLATES = [("config.example.yaml", "config.yaml"), (".env.example", ".env")]


def _venv_paths(project_dir: str) -> tuple[str, str]:
    venv_dir = os.path.join(project_dir, ".venv")
    bin_dir = "Scripts" if platform.system() == "Windows" else "bin"
    return venv_dir, os.path.join(venv_dir, bin_dir, "pip")


def _copy_templates(project_dir: str) -> None:
    for template, target in TEMPLATES:
        target_path = os.path.join(project_dir, target)
        if os.path.exists(target_path):
            print(f"{target} already exists, leaving it alone.")
            continue
        template_path = os.path.join(project_dir, template)
        if os.path.exists(template_path):
            shutil.copy(template_path, target_path)
            print(f"Wrote {target} from {template}")


def main() -> None:
    if sys.version_info < MIN_PYTHON:
        sys.exit(
            f"octo-bot needs Python {MIN_PYTHON[0]}.{MIN_PYTHON[1]} or newer "
            f"(found {sys.version_info.major}.{sys.version_info.minor})."
        )

    project_dir = os.path.dirname(os.path.abspath(__file__))
    venv_dir, pip = _venv_paths(project_dir)

    if not os.path.isdir(venv_dir):
        print("Creating .venv ...")
        subprocess.check_call([sys.executable, "-m", "venv", venv_dir])

    subprocess.check_call([pip, "install", "--upgrade", "pip"])
    target = "-e .[dev]" if "--dev" in sys.argv else "."
    print(f"pip install {target}")
    subprocess.check_call([pip, "install", *target.split()], cwd=project_dir)

    os.makedirs(os.path.join(project_dir, "data"), exist_ok=True)
    _copy_templates(project_dir)

    activate = r".\.venv\Scripts\activate" if platform.system() == "Windows" else "source .venv/bin/activate"
    print()
    print("octo-bot is installed. Next:")
    print("  1. Put provider keys and channel tokens in .env")
    print("  2. Describe models, bots and jobs in config.yaml")
    print(f"  3. {activate}")
    print("  4. octo-bot config-check")
    print("  5. octo-bot start")


if __name__ == "__main__":
    main()
