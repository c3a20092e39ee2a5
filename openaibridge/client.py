"""Command line client for openaibridge."""

import argparse
import asyncio
import base64
import os
import sys
from pathlib import Path

import openai
from openai import AsyncOpenAI
from dotenv import load_dotenv

# Load .env file from current directory or parents
load_dotenv()

DEFAULT_BASE_URL = os.environ.get("BRIDGE_BASE_URL", "http://localhost:8082")
DEFAULT_API_KEY = os.environ.get("BRIDGE_API_KEY")
DEFAULT_MODEL = os.environ.get("BRIDGE_MODEL", "local-model")


def _base_url(url: str) -> str:
    """The OpenAI SDK expects the /v1 prefix in its base URL."""
    base_url = url.rstrip("/")
    if not base_url.endswith("/v1"):
        base_url = f"{base_url}/v1"
    return base_url


def _format_tool_calls(tool_calls) -> str:
    return "\n".join(f"-> {tc.function.name}({tc.function.arguments})" for tc in tool_calls)


async def stream_response_async(
    client: AsyncOpenAI,
    model: str,
    prompt: str,
    index: int,
    delay: float = 0.0,
) -> tuple[int, str]:
    """Stream a single response, returning index and collected content."""
    if delay > 0:
        await asyncio.sleep(delay)

    chunks: list[str] = []
    tool_calls = []

    stream = await client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        stream=True,
    )
    async for chunk in stream:
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta
        if delta.content:
            chunks.append(delta.content)
        if delta.tool_calls:
            tool_calls.extend(delta.tool_calls)

    text = "".join(chunks)
    if tool_calls:
        text = "\n".join(part for part in (text, _format_tool_calls(tool_calls)) if part)
    return index, text


async def get_response_async(
    client: AsyncOpenAI,
    model: str,
    prompt: str,
    index: int,
    delay: float = 0.0,
) -> tuple[int, str]:
    """Get a non-streaming response, returning index and content."""
    if delay > 0:
        await asyncio.sleep(delay)

    response = await client.chat.completions.create(
        model=model,
        messages=[{"role": "user", "content": prompt}],
        stream=False,
    )
    message = response.choices[0].message
    text = message.content or ""
    if message.tool_calls:
        text = "\n".join(part for part in (text, _format_tool_calls(message.tool_calls)) if part)
    return index, text


async def run_parallel(
    url: str,
    model: str,
    prompt: str,
    count: int,
    stream: bool,
    api_key: str | None = None,
) -> None:
    """Run multiple chat requests in parallel with staggered starts."""
    show_index = count > 1
    stagger_delay = 0.1  # 100ms between request launches

    client = AsyncOpenAI(
        base_url=_base_url(url),
        api_key=api_key or "not-needed",
        timeout=300.0,
    )

    request_fn = stream_response_async if stream else get_response_async
    try:
        tasks = [
            asyncio.create_task(request_fn(client, model, prompt, i + 1, delay=i * stagger_delay))
            for i in range(count)
        ]

        # Print responses as they complete
        for coro in asyncio.as_completed(tasks):
            index, content = await coro
            prefix = f"[{index}] " if show_index else ""
            print(f"{prefix}{content}")
            print()  # Blank line between responses
    finally:
        await client.close()


async def generate_images(
    url: str,
    prompt: str,
    count: int,
    size: str,
    quality: str,
    output_dir: Path,
    api_key: str | None = None,
) -> list[Path]:
    """Generate images and write them as PNG files, returning their paths."""
    client = AsyncOpenAI(
        base_url=_base_url(url),
        api_key=api_key or "not-needed",
        timeout=300.0,
    )
    try:
        response = await client.images.generate(
            prompt=prompt,
            n=count,
            size=size,
            quality=quality,
            response_format="b64_json",
        )
    finally:
        await client.close()

    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for i, image in enumerate(response.data):
        path = output_dir / f"image-{response.created}-{i + 1}.png"
        path.write_bytes(base64.b64decode(image.b64_json))
        paths.append(path)
    return paths


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Send a prompt to an openaibridge server.",
        epilog="Examples:\n"
               "  openaibridge-client 'What is Python?'\n"
               "  echo 'Hello' | openaibridge-client\n"
               "  openaibridge-client -n 3 'Hello'  # Run 3 parallel requests\n"
               "  openaibridge-client --image 'A cat astronaut' --quality hd\n"
               "\n"
               "  # Remote bridge (via env vars)\n"
               "  export BRIDGE_BASE_URL=http://gpu-host:8082\n"
               "  openaibridge-client 'Hello'",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        help="The prompt to send (reads from stdin if not provided)",
    )
    parser.add_argument(
        "--model", "-m",
        default=DEFAULT_MODEL,
        help="Model to use (default: $BRIDGE_MODEL or local-model)",
    )
    parser.add_argument(
        "--url", "-u",
        default=DEFAULT_BASE_URL,
        help="Bridge base URL (default: $BRIDGE_BASE_URL or http://localhost:8082)",
    )
    parser.add_argument(
        "--api-key", "-k",
        default=DEFAULT_API_KEY,
        help="API key sent as bearer token (default: $BRIDGE_API_KEY)",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Disable streaming (wait for full response)",
    )
    parser.add_argument(
        "--parallel", "-n",
        type=int,
        default=1,
        help="Number of parallel requests, or images with --image (default: 1)",
    )
    parser.add_argument(
        "--image",
        action="store_true",
        help="Generate images instead of a chat completion",
    )
    parser.add_argument("--size", default="1024x1024", help="Image size (default: 1024x1024)")
    parser.add_argument("--quality", choices=["standard", "hd"], default="standard", help="Image quality")
    parser.add_argument("--output", "-o", type=Path, default=Path("."), help="Directory for generated images")

    args = parser.parse_args()

    # Get prompt from argument or stdin
    if args.prompt:
        prompt = args.prompt
    elif not sys.stdin.isatty():
        prompt = sys.stdin.read().strip()
    else:
        parser.error("No prompt provided. Pass as argument or pipe via stdin.")

    if not prompt:
        parser.error("Empty prompt provided.")

    if args.parallel < 1:
        parser.error("Parallel count must be at least 1.")

    try:
        if args.image:
            paths = asyncio.run(generate_images(
                url=args.url,
                prompt=prompt,
                count=args.parallel,
                size=args.size,
                quality=args.quality,
                output_dir=args.output,
                api_key=args.api_key,
            ))
            for path in paths:
                print(path)
        else:
            asyncio.run(run_parallel(
                url=args.url,
                model=args.model,
                prompt=prompt,
                count=args.parallel,
                stream=not args.no_stream,
                api_key=args.api_key,
            ))
    except openai.APIConnectionError:
        print(f"Error: Could not connect to {args.url}", file=sys.stderr)
        print("Make sure the server is running.", file=sys.stderr)
        sys.exit(1)
    except openai.AuthenticationError:
        print("Error: Authentication failed", file=sys.stderr)
        print("Check your API key (--api-key or $BRIDGE_API_KEY)", file=sys.stderr)
        sys.exit(1)
    except openai.APIStatusError as e:
        print(f"Error: HTTP {e.status_code}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
