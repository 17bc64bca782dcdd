import os
from contextlib import asynccontextmanager
from pathlib import Path
from fastapi import FastAPI

from golf_media.api.v1.routes import router as api_v1_router
from golf_media.services import attachments, stylization
from golf_media.services.job_queue import get_job_queue

# Load environment variables from .env file
print("\n" + "="*60)
print("🔧 LOADING ENVIRONMENT CONFIGURATION")
print("="*60)

env_path = Path(__file__).parent.parent / ".env"
print(f"Looking for .env file at: {env_path}")

if env_path.exists():
    print(f"✓ .env file found")
    from dotenv import load_dotenv
    load_dotenv(dotenv_path=env_path, override=True)
    print(f"✓ .env file loaded successfully")

    # Check if the key was loaded
    key = os.environ.get("GEMINI_API_KEY")
    if key:
        print(f"✓ GEMINI_API_KEY loaded: {key[:8]}...")
    else:
        print(f"⚠ GEMINI_API_KEY not found in .env file")
else:
    print(f"⚠ .env file not found at: {env_path}")
    print(f"  Create it with: GEMINI_API_KEY=your_key_here")

print("="*60 + "\n")


def create_app() -> FastAPI:
    """
    Application factory for the hole media API.

    Also binds the background tasks (stylization, attachment purges) to the
    process-wide job queue.
    """
    queue = get_job_queue()
    stylization.register_tasks(queue)
    attachments.register_tasks(queue)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        queue.shutdown(wait_for_tasks=False)

    app = FastAPI(
        lifespan=lifespan,
        title="Personal Golf Hole Media API",
        version="0.1.0",
        description="Hole layout uploads, AI stylization and image voting.",
    )

    # Infrastructure-level health check (non-versioned) primarily for ops.
    @app.get("/health", tags=["health"])
    async def root_health_check() -> dict:
        """Simple root health check endpoint."""
        return {"status": "ok"}

    # Public, versioned API routes.
    app.include_router(api_v1_router)

    return app


app = create_app()
