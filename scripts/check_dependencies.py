"""
Check if all dependencies are installed correctly
"""

import importlib
import os
import sys


def check_dependencies():
    """Check required dependencies and report which credentials are set"""

    print("Checking dependencies...")
    print("=" * 50)

    required = {
        "fastapi": "FastAPI",
        "uvicorn": "Uvicorn",
        "httpx": "HTTPX",
        "pydantic": "Pydantic",
        "pydantic_settings": "pydantic-settings",
        "anthropic": "Anthropic SDK (judgment model)",
        "dns.resolver": "dnspython (DMARC lookups)",
        "tldextract": "tldextract",
        "numpy": "NumPy (image forensics)",
        "PIL": "Pillow (image forensics)",
        "dotenv": "python-dotenv",
    }

    optional = {
        "redis": "Redis (persistent intelligence store)",
    }

    credentials = {
        "ANTHROPIC_API_KEY": "judgment model",
        "VIRUS_TOTAL": "VirusTotal reputation",
        "GOOGLE_API_KEY": "web risk lists",
        "SIGHT_API_USER": "media classifier",
        "SIGHT_API_SECRET": "media classifier",
        "REDIS_URL": "Redis intelligence store",
    }

    missing_required = []

    print("\nRequired dependencies:")
    for module, name in required.items():
        try:
            importlib.import_module(module)
            print(f"  [OK] {name}")
        except ImportError:
            print(f"  [MISSING] {name}")
            missing_required.append(name)

    print("\nOptional dependencies:")
    for module, name in optional.items():
        try:
            importlib.import_module(module)
            print(f"  [OK] {name}")
        except ImportError:
            print(f"  [MISSING] {name}")

    print("\nCredentials:")
    for variable, purpose in credentials.items():
        state = "set" if os.getenv(variable) else "not set (source reports unavailable)"
        print(f"  {variable:<18} {purpose}: {state}")

    print("\n" + "=" * 50)

    if missing_required:
        print("\nMissing required dependencies:")
        for dep in missing_required:
            print(f"  - {dep}")
        print("\nInstall with: pip install -e .")
        return False

    print("\nAll required dependencies are installed!")
    return True


if __name__ == "__main__":
    success = check_dependencies()
    sys.exit(0 if success else 1)
