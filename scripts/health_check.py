"""
Health check script to verify Zoom credentials and the running service
Can be used in monitoring, CI/CD, or startup validation
"""
import sys
import asyncio
import httpx

from reelsync.errors import AuthError
from reelsync.ingest.auth import ZoomTokenProvider


async def check_zoom_credentials():
    """Obtain a Zoom access token directly"""
    provider = ZoomTokenProvider()
    try:
        credential = await provider.get_token()
        print(f"[OK] Zoom token obtained (valid until {credential.expires_at:.0f})")
        return True
    except AuthError as e:
        print(f"[FAIL] Zoom token request failed: {e}")
        return False
    finally:
        await provider.close()


async def check_endpoint(base_url="http://localhost:8000"):
    """Check /health and the stream state it reports"""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{base_url}/health")
    except httpx.ConnectError:
        print("[FAIL] Cannot connect to service on port 8000")
        return False

    if response.status_code != 200:
        print(f"[FAIL] /health returned status {response.status_code}: {response.text}")
        return False

    stream = response.json().get("stream", {})
    if not stream.get("enabled"):
        print("[OK] Service healthy (stream disabled)")
        return True
    if stream.get("fatal"):
        print("[FAIL] Stream gave up reconnecting; POST /stream/reconnect to restart it")
        return False
    if stream.get("connected"):
        print("[OK] Service healthy, stream connected")
    else:
        print(
            f"[WARN] Stream not connected (state={stream.get('state')}, "
            f"attempt={stream.get('reconnect_attempt')})"
        )
    return True


async def main():
    """Run all health checks"""
    print("Running health checks...")
    print("=" * 50)

    credentials_check = await check_zoom_credentials()
    endpoint_check = await check_endpoint()

    print("=" * 50)
    if credentials_check and endpoint_check:
        print("[OK] All health checks passed!")
        sys.exit(0)
    else:
        print("[FAIL] Some health checks failed!")
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(main())
