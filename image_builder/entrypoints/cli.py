from __future__ import annotations

from collections.abc import Callable

from image_builder.entrypoints import commands
from image_builder.entrypoints.runtime_builder import BuilderRuntime, load_runtime


def main(
    argv: list[str] | None = None,
    *,
    load_runtime_fn: Callable[[], BuilderRuntime | None] = load_runtime,
) -> int:
    parser = commands.build_parser()
    args = parser.parse_args(argv)
    command = args.command or "launch"

    runtime = load_runtime_fn()
    if runtime is None:
        return 1

    if command == "build":
        return commands.build_image(runtime, source_dir=args.source)
    if command == "verify":
        return commands.verify_built_image(
            runtime,
            skip_cache_verify=args.skip_cache_verify,
            allow_artifact_contents=args.allow_artifact_contents,
        )
    if command == "render-dockerfile":
        return commands.render_dockerfile_command(runtime, output=args.output)
    if command == "audit-dockerfile":
        return commands.audit_dockerfile_command(runtime, dockerfile=args.dockerfile)
    return commands.launch_image(runtime)


if __name__ == "__main__":
    raise SystemExit(main())
