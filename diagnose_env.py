"""
Diagnostic script for the hole media service configuration.
Checks .env loading, the Gemini API key, blob storage and job settings.
"""

import os
import sys
from pathlib import Path

print("\n" + "="*70)
print("🔍 ENVIRONMENT DIAGNOSTICS")
print("="*70 + "\n")

print(f"1. Python Version: {sys.version}")
print()

env_path = Path(__file__).parent / ".env"
print(f"2. .env File Location: {env_path}")
print(f"   Exists: {env_path.exists()}")
if env_path.exists():
    print("\n   Keys defined:")
    with open(env_path, 'r') as f:
        for i, line in enumerate(f, 1):
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                if 'KEY' in key:
                    value = value[:8] + '...' if len(value) > 8 else value
                print(f"   Line {i}: {key}={value}")
print()

print("3. Loading .env File:")
try:
    from dotenv import load_dotenv
    print(f"   Result: {load_dotenv(dotenv_path=env_path, override=True)}")
except ImportError:
    print("   ✗ python-dotenv NOT installed")
    print("   Run: pip install python-dotenv")
print()

print("4. Gemini API Key:")
key = os.environ.get("GEMINI_API_KEY")
if key:
    print(f"   ✓ GEMINI_API_KEY is set ({len(key)} characters)")
    if not key.startswith("AIza"):
        print("   ⚠ WARNING: Google API keys normally start with 'AIza'")
else:
    print("   ✗ GEMINI_API_KEY is NOT set; uploads will be marked failed")
print(f"   Model: {os.environ.get('GEMINI_IMAGE_MODEL', 'gemini-2.5-flash-image-preview (default)')}")
print()

print("5. Attachment Storage:")
storage_dir = Path(os.environ.get("GOLF_MEDIA_STORAGE_DIR", "storage/attachments"))
print(f"   Directory: {storage_dir.resolve()}")
try:
    storage_dir.mkdir(parents=True, exist_ok=True)
    probe = storage_dir / ".write-probe"
    probe.write_bytes(b"ok")
    probe.unlink()
    storage_ok = True
    print("   ✓ Writable")
except OSError as e:
    storage_ok = False
    print(f"   ✗ Not writable: {e}")
print()

print("6. Background Jobs:")
eager = os.environ.get("GOLF_MEDIA_EAGER_JOBS", "0") == "1"
print(f"   Mode: {'eager (inline)' if eager else 'thread pool'}")
print(f"   AI generation workers: {os.environ.get('GOLF_MEDIA_AI_WORKERS', '2')}")
print()

print("7. Gemini Reachability:")
if key:
    try:
        import requests
        from golf_media.services.gemini_client import GeminiImageClient

        client = GeminiImageClient(api_key=key)
        response = requests.get(
            f"{client.base_url}/models/{client.model}",
            params={"key": key},
            timeout=10,
        )
        print(f"   Status: {response.status_code}")
        if response.status_code != 200:
            print(f"   Body: {response.text[:200]}")
    except Exception as e:
        print(f"   ✗ Request failed: {e}")
else:
    print("   ⚠ Skipped (no key)")
print()

print("="*70)
print("📋 SUMMARY")
print("="*70)

issues = []
if not env_path.exists():
    issues.append("❌ .env file not found")
if not key:
    issues.append("❌ GEMINI_API_KEY not set")
if not storage_ok:
    issues.append("❌ Attachment storage directory not writable")

if not issues:
    print("✅ All checks passed! Configuration looks good.")
    print("\nYou can now start the server:")
    print("  uvicorn golf_media.main:app --reload")
else:
    print("Issues found:\n")
    for issue in issues:
        print(f"  {issue}")
    print("\nRecommended actions:")
    print("  1. Create .env with: GEMINI_API_KEY=your_key_here")
    print("  2. Get a key from: https://aistudio.google.com/app/apikey")

print("="*70 + "\n")
