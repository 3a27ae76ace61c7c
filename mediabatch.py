#!/usr/bin/env python3

import argparse
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
from typing import Dict, List, NamedTuple, Optional, Sequence, TypedDict

DEFAULT_SOURCE_FORMAT = "avr"
DEFAULT_EXPORT_FORMAT = "mp4"
DEFAULT_ENCODER = "ffmpeg"
DEFAULT_VIDEO_CODEC = "libx264"
DEFAULT_AUDIO_CODEC = "aac"

ALL_FILES_GROUP = "all_files"
UNGROUPED_GROUP = "ungrouped"
MERGE_LIST_SUFFIX = ".concat.txt"
PART_SUFFIX = ".part"

ENV_PREFIX = "MEDIABATCH_"
_TRUTHY = {"1", "true", "yes", "on"}

ENCODER_INSTALL_HINT = (
    "install ffmpeg and make sure it is on PATH "
    "(e.g. 'apt install ffmpeg', 'brew install ffmpeg', "
    "or https://ffmpeg.org/download.html)"
)

FFMPEG_COMMON_FLAGS = ["-hide_banner", "-y"]

VERBOSE_LEVEL = 0


class InvocationConfig(NamedTuple):
    source: str
    destination: str
    source_format: str = DEFAULT_SOURCE_FORMAT
    export_format: str = DEFAULT_EXPORT_FORMAT
    group_by: str = ""
    merge: bool = False
    encoder: str = DEFAULT_ENCODER
    video_codec: str = DEFAULT_VIDEO_CODEC
    audio_codec: str = DEFAULT_AUDIO_CODEC
    overwrite: bool = False
    keep_going: bool = False
    verbose: int = 0


class DiscoveredFile(TypedDict):
    name: str
    path: str


class _GroupKeyRequired(TypedDict):
    kind: str
    key: str


class GroupKey(_GroupKeyRequired, total=False):
    error: str


class GroupResult(TypedDict):
    name: str
    outputs: List[str]
    merged: Optional[str]
    failed: bool


class EncoderError(RuntimeError):
    def __init__(self, cmd: Sequence[str], returncode: int) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        super().__init__(
            f"{os.path.basename(str(cmd[0]))} exited with status {returncode}"
        )


class InvalidPatternError(ValueError):
    pass


def _env_str(name: str, default: str) -> str:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    return value


def _env_flag(name: str) -> bool:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return False
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    return int(value)


def normalize_format(fmt: Optional[str]) -> str:
    return str(fmt or "").strip().lstrip(".")


def _print_command(cmd: Sequence[str]) -> None:
    if VERBOSE_LEVEL > 1:
        cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    else:
        cmdline = " ".join(map(str, cmd))
    print("+ " + cmdline, file=sys.stderr)


def run(cmd: List[str]) -> None:
    _print_command(cmd)
    p = subprocess.run(cmd)
    if p.returncode != 0:
        raise EncoderError(cmd, p.returncode)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="mediabatch",
        description=(
            "Batch-convert media files with ffmpeg. Files can be grouped by a "
            "regular expression and the converted files of each group merged "
            "into one output."
        ),
        add_help=False,
    )
    ap.add_argument(
        "--source",
        default=_env_str("SOURCE", ""),
        help="Directory holding the files to convert.",
    )
    ap.add_argument(
        "--destination",
        default=_env_str("DESTINATION", ""),
        help="Directory receiving one subfolder per group (created if missing).",
    )
    ap.add_argument(
        "--source-format",
        "--sourceFormat",
        dest="source_format",
        default=_env_str("SOURCE_FORMAT", DEFAULT_SOURCE_FORMAT),
        help="Extension of the input files (default: %(default)s).",
    )
    ap.add_argument(
        "--export-format",
        "--exportFormat",
        dest="export_format",
        default=_env_str("EXPORT_FORMAT", DEFAULT_EXPORT_FORMAT),
        help="Extension of the converted files (default: %(default)s).",
    )
    ap.add_argument(
        "--group-by",
        "--groupBy",
        dest="group_by",
        default=_env_str("GROUP_BY", ""),
        help=(
            "Regular expression; the first match in each file name becomes its "
            f"group. Files that do not match go to '{UNGROUPED_GROUP}'."
        ),
    )
    ap.add_argument(
        "--merge",
        action="store_true",
        default=_env_flag("MERGE"),
        help="Concatenate the converted files of each group with two or more files.",
    )
    ap.add_argument(
        "--encoder",
        default=_env_str("ENCODER", DEFAULT_ENCODER),
        help="Encoder executable looked up on PATH (default: %(default)s).",
    )
    ap.add_argument(
        "--video-codec",
        default=_env_str("VIDEO_CODEC", DEFAULT_VIDEO_CODEC),
        help="Video codec passed as -c:v (default: %(default)s).",
    )
    ap.add_argument(
        "--audio-codec",
        default=_env_str("AUDIO_CODEC", DEFAULT_AUDIO_CODEC),
        help="Audio codec passed as -c:a (default: %(default)s).",
    )
    ap.add_argument(
        "--overwrite",
        action="store_true",
        default=_env_flag("OVERWRITE"),
        help="Re-encode files whose output already exists instead of reusing it.",
    )
    ap.add_argument(
        "--keep-going",
        action="store_true",
        default=_env_flag("KEEP_GOING"),
        help="On an encoder failure, abandon only that group and continue with the rest.",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=_env_int("VERBOSE", 0),
        help="Increase verbosity (-v, -vv).",
    )
    ap.add_argument(
        "-h",
        "--help",
        action="store_true",
        help="Show this help message and exit.",
    )
    return ap


def resolve_config(args: argparse.Namespace) -> InvocationConfig:
    return InvocationConfig(
        source=args.source,
        destination=args.destination,
        source_format=normalize_format(args.source_format),
        export_format=normalize_format(args.export_format),
        group_by=args.group_by or "",
        merge=bool(args.merge),
        encoder=args.encoder,
        video_codec=args.video_codec,
        audio_codec=args.audio_codec,
        overwrite=bool(args.overwrite),
        keep_going=bool(args.keep_going),
        verbose=args.verbose,
    )


def check_preconditions(config: InvocationConfig) -> None:
    if not os.path.isdir(config.source):
        logging.error("source directory does not exist: %s", config.source)
        sys.exit(1)
    if shutil.which(config.encoder) is None:
        logging.error(
            "%s not found on PATH; %s", config.encoder, ENCODER_INSTALL_HINT
        )
        sys.exit(1)
    os.makedirs(config.destination, exist_ok=True)


def _should_ignore_name(name: str) -> bool:
    return name.startswith("._")


def discover_files(source: str, source_format: str) -> List[DiscoveredFile]:
    wanted = os.path.normcase("." + source_format)
    files: List[DiscoveredFile] = []
    for entry in sorted(os.listdir(source)):
        if _should_ignore_name(entry):
            continue
        stem, ext = os.path.splitext(entry)
        if not stem or os.path.normcase(ext) != wanted:
            continue
        path = os.path.join(source, entry)
        if not os.path.isfile(path):
            continue
        files.append({"name": stem, "path": path})
    return files


def classify_name(name: str, pattern: str) -> GroupKey:
    if not pattern:
        return {"kind": "all", "key": ALL_FILES_GROUP}
    try:
        m = re.search(pattern, name)
    except re.error as exc:
        return {"kind": "invalid", "key": "", "error": str(exc)}
    # an empty match would name the group ""
    if m is None or not m.group(0):
        return {"kind": "unmatched", "key": UNGROUPED_GROUP}
    return {"kind": "matched", "key": sanitize_group_name(m.group(0))}


def sanitize_group_name(key: str) -> str:
    key = key.replace("/", "_").replace("\\", "_")
    if key in (".", ".."):
        return key.replace(".", "_")
    return key


def group_files(
    files: Sequence[DiscoveredFile], pattern: str
) -> Dict[str, List[DiscoveredFile]]:
    groups: Dict[str, List[DiscoveredFile]] = {}
    for f in files:
        result = classify_name(os.path.basename(f["path"]), pattern)
        if result["kind"] == "invalid":
            raise InvalidPatternError(
                f"invalid --group-by pattern {pattern!r}: {result.get('error', '')}"
            )
        groups.setdefault(result["key"], []).append(f)
    return groups


def transcode_command(config: InvocationConfig, src: str, dest: str) -> List[str]:
    return [
        config.encoder,
        *FFMPEG_COMMON_FLAGS,
        "-i",
        src,
        "-c:v",
        config.video_codec,
        "-c:a",
        config.audio_codec,
        dest,
    ]


def concat_command(config: InvocationConfig, list_path: str, dest: str) -> List[str]:
    return [
        config.encoder,
        *FFMPEG_COMMON_FLAGS,
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        list_path,
        "-c",
        "copy",
        dest,
    ]


def part_path(dest: str) -> str:
    # keep the real extension last so the encoder still picks the muxer from it
    root, ext = os.path.splitext(dest)
    return root + PART_SUFFIX + ext


def run_to(cmd: List[str], dest: str) -> None:
    # cmd writes to part_path(dest); dest exists only after a clean exit
    part = cmd[-1]
    try:
        run(cmd)
        os.replace(part, dest)
    finally:
        if os.path.exists(part):
            os.remove(part)


def convert_file(config: InvocationConfig, f: DiscoveredFile, out_dir: str) -> str:
    dest = os.path.join(out_dir, f"{f['name']}.{config.export_format}")
    if os.path.exists(dest) and not config.overwrite:
        logging.info("output exists, skipping: %s", dest)
        return dest
    logging.info("converting %s -> %s", f["path"], dest)
    run_to(transcode_command(config, f["path"], part_path(dest)), dest)
    return dest


def convert_group(
    config: InvocationConfig, name: str, members: Sequence[DiscoveredFile]
) -> List[str]:
    out_dir = os.path.join(config.destination, name)
    os.makedirs(out_dir, exist_ok=True)
    outputs: List[str] = []
    for f in members:
        try:
            outputs.append(convert_file(config, f, out_dir))
        except EncoderError as exc:
            logging.error("group %s: failed to convert %s: %s", name, f["path"], exc)
            raise
    return outputs


def _concat_quote(path: str) -> str:
    return "'" + path.replace("'", "'\\''") + "'"


def merge_list_path(destination: str, group: str) -> str:
    return os.path.join(destination, group + MERGE_LIST_SUFFIX)


def write_merge_list(list_path: str, outputs: Sequence[str]) -> None:
    with open(list_path, "w", encoding="utf-8") as fh:
        for out in outputs:
            fh.write(f"file {_concat_quote(os.path.abspath(out))}\n")


def merge_group(
    config: InvocationConfig, name: str, outputs: Sequence[str]
) -> Optional[str]:
    if not config.merge or len(outputs) < 2:
        return None
    list_path = merge_list_path(config.destination, name)
    merged = os.path.join(config.destination, f"{name}.{config.export_format}")
    try:
        write_merge_list(list_path, outputs)
        logging.info("merging %d file(s) of group %s -> %s", len(outputs), name, merged)
        run_to(concat_command(config, list_path, part_path(merged)), merged)
    except EncoderError as exc:
        logging.error("group %s: merge failed: %s", name, exc)
        raise
    finally:
        try:
            os.remove(list_path)
        except FileNotFoundError:
            pass
    return merged


def run_pipeline(
    config: InvocationConfig, groups: Dict[str, List[DiscoveredFile]]
) -> List[GroupResult]:
    results: List[GroupResult] = []
    for name, members in groups.items():
        logging.info("group %s: %d file(s)", name, len(members))
        result: GroupResult = {
            "name": name,
            "outputs": [],
            "merged": None,
            "failed": False,
        }
        try:
            result["outputs"] = convert_group(config, name, members)
            result["merged"] = merge_group(config, name, result["outputs"])
        except EncoderError:
            if not config.keep_going:
                raise
            logging.warning("group %s: abandoned, continuing with remaining groups", name)
            result["failed"] = True
        results.append(result)
    return results


def summary_line(merge: bool) -> str:
    if merge:
        return "Conversion complete (merge requested)."
    return "Conversion complete (merge not requested)."


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = build_parser()
    args = ap.parse_args(argv)

    if args.help or not args.source or not args.destination:
        ap.print_help(sys.stdout)
        return

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stdout, format="%(levelname)s: %(message)s"
    )

    config = resolve_config(args)
    check_preconditions(config)

    files = discover_files(config.source, config.source_format)
    if not files:
        logging.error(
            "no .%s files found in %s", config.source_format, config.source
        )
        sys.exit(1)
    logging.info("inputs: %d in %s", len(files), config.source)

    try:
        groups = group_files(files, config.group_by)
    except InvalidPatternError as exc:
        logging.error("%s", exc)
        sys.exit(2)
    logging.info("groups: %s", ", ".join(groups))

    try:
        results = run_pipeline(config, groups)
    except EncoderError as exc:
        sys.exit(exc.returncode)

    failed = [r["name"] for r in results if r["failed"]]
    print(summary_line(config.merge))
    if failed:
        logging.warning("groups with failures: %s", ", ".join(failed))
        sys.exit(1)


if __name__ == "__main__":
    main()
