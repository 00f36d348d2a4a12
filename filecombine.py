import argparse
from dataclasses import dataclass
from datetime import datetime
import fnmatch
import glob
import logging
import os
import re
import stat
import sys
from pathlib import Path

from tqdm import tqdm

from utils import (
    comment_style_for,
    is_binary_file,
    load_gitignore,
    load_yaml_config,
    newline_bytes,
    validate_config,
    CombineError,
    ConfigNotFoundError,
    InvalidConfigError,
    OutputDirectoryError,
    OutputFileError,
    DEFAULT_MAX_SIZE,
)


__version__ = "2.1.0"

SEPARATOR_RULE = "=" * 70
SKIPPED_PREVIEW_LIMIT = 15
SELECTED_PREVIEW_LIMIT = 20

SKIP_STAT_ERROR = 'stat-error'
SKIP_EXCLUDED = 'excluded'
SKIP_TOO_LARGE = 'too-large'
SKIP_BINARY = 'binary'


@dataclass(frozen=True)
class SelectionConfig:
    """Which files to pick up and which to leave out."""

    root: Path
    patterns: tuple
    excludes: tuple = ()
    max_size: int = DEFAULT_MAX_SIZE
    ignore_gitignore: bool = False


@dataclass(frozen=True)
class OutputConfig:
    """Where and how the combined artifact is written."""

    output: Path
    separators: bool = True
    encoding: str = 'utf-8'
    newline: str = 'lf'
    dry_run: bool = False


@dataclass(frozen=True)
class CandidateFile:
    path: Path
    size: int
    is_regular: bool


@dataclass(frozen=True)
class SkipRecord:
    """A discovered file that was left out, and why."""

    path: Path
    reason: str
    message: str


@dataclass(frozen=True)
class SelectedFile:
    path: Path
    ordinal: int


@dataclass(frozen=True)
class CombineResult:
    success_count: int
    error_count: int
    output_path: Path


def _relative_posix(path, root):
    """Return ``path`` relative to ``root`` using ``/`` separators."""
    try:
        return Path(os.path.relpath(path, root)).as_posix()
    except ValueError:
        return Path(path).as_posix()


def _glob_rooted(root_path, pattern):
    """Expand ``pattern`` relative to ``root_path``; ``**`` spans directories."""
    search = os.path.join(glob.escape(os.fspath(root_path)), pattern)
    matches = set()
    try:
        for match in glob.glob(search, recursive=True, include_hidden=True):
            if os.path.isdir(match):
                continue
            matches.add(Path(os.path.abspath(match)))
    except (OSError, re.error) as exc:
        logging.debug("Glob pattern '%s' failed: %s. Treating as no match.", pattern, exc)
    return matches


def _walk_basenames(root_path, patterns):
    """Match every file name under ``root_path`` against ``patterns``."""

    def _on_walk_error(exc):
        logging.debug("Skipping unreadable directory during search: %s", exc)

    matches = set()
    if not patterns:
        return matches
    for dirpath, _dirnames, filenames in os.walk(root_path, onerror=_on_walk_error):
        for name in filenames:
            if any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns):
                matches.add(Path(os.path.abspath(os.path.join(dirpath, name))))
    return matches


def sort_paths(paths, root):
    """Sort ``paths`` lexicographically by their root-relative form."""
    return sorted(paths, key=lambda p: _relative_posix(p, root))


def find_candidates(root, patterns):
    """Return the sorted, de-duplicated files under ``root`` matching ``patterns``.

    Each pattern is resolved two ways and the results are unioned:

    - as a glob rooted at ``root`` where ``**`` matches any number of
      directories (``src/**/*.c`` finds ``src/a.c`` and ``src/x/y/a.c``);
    - against the basename of every file found by walking ``root``, so a
      pattern without a ``/`` such as ``*.py`` matches at every depth.

    Hidden files and directories are matched like any other. Directories
    are never returned. A pattern that matches nothing simply
    contributes no paths.
    """
    root_path = Path(root)
    found = set()
    for pattern in patterns:
        found |= _glob_rooted(root_path, pattern)
    basename_patterns = [p for p in patterns if '/' not in p]
    found |= _walk_basenames(root_path, basename_patterns)
    return sort_paths(found, root_path)


def matching_exclusion(path, root, patterns):
    """Return the first exclusion pattern that matches ``path``, if any.

    A pattern matches when it is a substring of the root-relative path, when
    it matches the file name as a glob, or when it (minus a trailing ``/``)
    equals one of the path's segments. Substring matching is deliberately
    broad: ``dist`` also excludes ``src/distinct/file.go``.
    """
    rel_str = _relative_posix(path, root)
    parts = rel_str.split('/')
    name = parts[-1]
    for pattern in patterns:
        pattern = pattern.strip()
        if not pattern:
            continue
        if pattern in rel_str:
            return pattern
        if fnmatch.fnmatchcase(name, pattern):
            return pattern
        segment = pattern[:-1] if pattern.endswith('/') else pattern
        if segment in parts:
            return pattern
    return None


def is_excluded(path, root, patterns) -> bool:
    return matching_exclusion(path, root, patterns) is not None


def gather_exclusions(config: SelectionConfig) -> list[str]:
    """Return manual exclusions followed by the root's ``.gitignore`` patterns."""
    patterns = list(config.excludes)
    if not config.ignore_gitignore:
        patterns.extend(load_gitignore(config.root))
    return patterns


def _stat_candidate(path):
    st = path.stat()
    return CandidateFile(path=path, size=st.st_size, is_regular=stat.S_ISREG(st.st_mode))


def select_files(config: SelectionConfig, exclude_patterns) -> tuple[list[Path], list[SkipRecord]]:
    """Discover and filter files for ``config``.

    Returns
    -------
    tuple[list[Path], list[SkipRecord]]
        The selected files in sorted order and the skipped files in the order
        they were rejected. Non-regular files are dropped without a record.

    Checks run cheapest first: exclusion patterns, then size, and only then a
    content read for binary detection.
    """
    selected = []
    skipped = []
    root = config.root

    for path in find_candidates(root, config.patterns):
        rel_str = _relative_posix(path, root)
        try:
            candidate = _stat_candidate(path)
        except OSError as exc:
            skipped.append(SkipRecord(path, SKIP_STAT_ERROR, f"Cannot stat: {exc}"))
            continue

        if not candidate.is_regular:
            logging.debug("Ignoring non-regular file: %s", rel_str)
            continue

        pattern = matching_exclusion(path, root, exclude_patterns)
        if pattern is not None:
            logging.debug("Excluded %s (pattern '%s')", rel_str, pattern)
            skipped.append(SkipRecord(path, SKIP_EXCLUDED, "Matched exclusion pattern"))
            continue

        if candidate.size > config.max_size:
            size_mb = candidate.size / (1024 * 1024)
            skipped.append(
                SkipRecord(path, SKIP_TOO_LARGE, f"Too large ({size_mb:.1f} MB)")
            )
            continue

        if is_binary_file(path):
            skipped.append(SkipRecord(path, SKIP_BINARY, "Binary file"))
            continue

        logging.debug("Selected %s (%d bytes)", rel_str, candidate.size)
        selected.append(path)

    return selected, skipped


def exclude_output_file(files, output_path):
    """Drop ``output_path`` from ``files`` so the output never reads itself."""
    target = Path(output_path).resolve()
    kept = []
    for file_path in files:
        if Path(file_path).resolve() == target:
            logging.info("Leaving the output file out of its own input: %s", file_path)
            continue
        kept.append(file_path)
    return kept


def create_separator(path, root, ordinal, style, timestamp=None):
    """Return the header block written before a file's content."""
    rel_str = _relative_posix(path, root)
    if timestamp is None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    if style.is_block:
        return (
            f"\n{style.block_start}\n"
            f" FILE {ordinal}: {rel_str}\n"
            f" Combined at: {timestamp}\n"
            f"{style.block_end}\n\n"
        )
    if style.single_line:
        marker = style.single_line
        return (
            f"\n{marker} {SEPARATOR_RULE}\n"
            f"{marker} FILE {ordinal}: {rel_str}\n"
            f"{marker} Combined at: {timestamp}\n"
            f"{marker} {SEPARATOR_RULE}\n\n"
        )
    return f"\n{SEPARATOR_RULE}\n FILE {ordinal}: {rel_str}\n{SEPARATOR_RULE}\n\n"


def _progress_enabled(dry_run=False):
    """Return ``True`` when a progress bar should be displayed."""

    if logging.getLogger().getEffectiveLevel() <= logging.INFO:
        return False
    if dry_run:
        return False
    if os.getenv("CI"):
        return False
    return True


def _open_output(output_path):
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputDirectoryError(
            f"Cannot create output directory '{output_path.parent}': {exc}"
        ) from exc
    try:
        return open(output_path, 'wb')
    except OSError as exc:
        raise OutputFileError(
            f"Cannot create output file '{output_path}': {exc}"
        ) from exc


def combine_files(files, selection: SelectionConfig, output_opts: OutputConfig) -> CombineResult:
    """Write ``files`` into the output artifact, in order.

    ``files`` must already be sorted and must not contain the output file.
    Raises :class:`OutputDirectoryError` or :class:`OutputFileError` before
    anything is written if the output cannot be set up. A file that cannot be
    read is logged, counted and skipped; its ordinal is not reused.
    """
    output_path = Path(output_opts.output)
    newline = newline_bytes(output_opts.newline)
    total = len(files)
    success_count = 0
    error_count = 0

    entries = [SelectedFile(path=p, ordinal=i + 1) for i, p in enumerate(files)]
    enabled = _progress_enabled(output_opts.dry_run)

    with _open_output(output_path) as outfile, tqdm(
        entries,
        desc="Combining files",
        unit="file",
        disable=None if enabled else True,
    ) as progress:
        for entry in progress:
            logging.info("Processing [%d/%d]: %s", entry.ordinal, total, entry.path.name)
            try:
                content = entry.path.read_bytes()
            except OSError as exc:
                logging.warning("Skipped %s: %s", entry.path, exc)
                error_count += 1
                continue

            if output_opts.separators:
                style = comment_style_for(entry.path)
                separator = create_separator(entry.path, selection.root, entry.ordinal, style)
                outfile.write(separator.encode('utf-8', 'surrogateescape'))

            outfile.write(content)
            if content and not content.endswith(newline):
                outfile.write(newline)
            success_count += 1

    return CombineResult(
        success_count=success_count,
        error_count=error_count,
        output_path=output_path,
    )


def _printable(text):
    """Replace undecodable file-name bytes so the text can be printed."""
    return text.encode('utf-8', 'surrogateescape').decode('utf-8', 'replace')


def _size_kb(path):
    try:
        return path.stat().st_size / 1024
    except OSError:
        return 0.0


def print_summary(selection, output_opts, files, skipped):
    """Print the run summary, skipped files and, in dry-run, the selection."""
    root = selection.root
    print("\n" + SEPARATOR_RULE)
    print("COMBINE FILES - SUMMARY")
    print(SEPARATOR_RULE)
    print(f"Root directory    : {root}")
    print(f"Output file       : {output_opts.output}")
    print(f"Search patterns   : {', '.join(selection.patterns)}")
    print(f"Files found       : {len(files)}")
    print(f"Files excluded    : {len(skipped)}")
    if output_opts.dry_run:
        print("Mode              : DRY-RUN (no changes)")
    else:
        print("Mode              : EXECUTION")
    print(SEPARATOR_RULE)

    if skipped:
        print(f"\nEXCLUDED FILES (showing first {SKIPPED_PREVIEW_LIMIT}):")
        for record in skipped[:SKIPPED_PREVIEW_LIMIT]:
            print(f"  × {_printable(_relative_posix(record.path, root))}")
            print(f"    Reason: {record.message}")
        if len(skipped) > SKIPPED_PREVIEW_LIMIT:
            print(f"  ... and {len(skipped) - SKIPPED_PREVIEW_LIMIT} more files\n")

    if output_opts.dry_run and files:
        print(f"\nFILES TO BE COMBINED (showing first {SELECTED_PREVIEW_LIMIT}):")
        for file_path in files[:SELECTED_PREVIEW_LIMIT]:
            print(f"  ✓ {_printable(_relative_posix(file_path, root))} ({_size_kb(file_path):.1f} KB)")
        if len(files) > SELECTED_PREVIEW_LIMIT:
            print(f"  ... and {len(files) - SELECTED_PREVIEW_LIMIT} more files")
        print(f"\nTotal: {len(files)} files will be combined")


def print_result(result: CombineResult):
    print("\n" + SEPARATOR_RULE)
    print(f"SUCCESS: Combined {result.success_count} files into {result.output_path}")
    if result.error_count:
        print(f"WARNING: {result.error_count} files were skipped due to errors")
    print(SEPARATOR_RULE)


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


_EPILOG = """\
Examples:
  filecombine -p "*.py" -o combined.py
  filecombine -p "*.go,*.mod" -o project.txt
  filecombine -p "**/*.js" -o bundle.js -e "node_modules,dist"
  filecombine -p "src/**/*.cpp" -o output.cpp --dry-run
"""


def build_parser():
    parser = _ArgumentParser(
        prog="filecombine",
        description=(
            f"filecombine v{__version__} - Combine multiple files matching glob "
            "patterns into a single file."
        ),
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )

    selection_group = parser.add_argument_group("Selection")
    selection_group.add_argument(
        "-p", "--patterns",
        help='Glob patterns (comma-separated), e.g. "*.py,*.txt". Required.',
    )
    selection_group.add_argument(
        "-e", "--exclude",
        help="Exclude patterns (comma-separated).",
    )
    selection_group.add_argument(
        "-root", "--root",
        help="Root directory to search (default: .).",
    )
    selection_group.add_argument(
        "-max-size", "--max-size",
        dest="max_size",
        help="Maximum file size in bytes; KB/MB/GB suffixes are accepted (default: 104857600).",
    )
    selection_group.add_argument(
        "-ignore-gitignore", "--ignore-gitignore",
        dest="ignore_gitignore",
        action="store_true",
        help="Don't read .gitignore.",
    )

    output_group = parser.add_argument_group("Output")
    output_group.add_argument(
        "-o", "--output",
        help="Output file path. Required.",
    )
    output_group.add_argument(
        "-no-separator", "--no-separator",
        dest="no_separator",
        action="store_true",
        help="Don't add separators between files.",
    )
    output_group.add_argument(
        "-encoding", "--encoding",
        help="Declared output encoding (default: utf-8). File content is never transcoded.",
    )
    output_group.add_argument(
        "-newline", "--newline",
        help="Newline type: lf, crlf, cr (default: lf).",
    )

    runtime_group = parser.add_argument_group("Runtime")
    runtime_group.add_argument(
        "-config", "--config",
        help="YAML file with default settings; command-line flags take precedence.",
    )
    runtime_group.add_argument(
        "-dry-run", "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Preview without writing.",
    )
    runtime_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output.",
    )
    runtime_group.add_argument(
        "-debug", "--debug",
        action="store_true",
        help="Debug output (implies -v).",
    )
    runtime_group.add_argument(
        "-version", "--version",
        action="store_true",
        help="Show version.",
    )
    return parser


def resolve_settings(args):
    """Merge the YAML config file (if any) with command-line values.

    Command-line values win. Raises :class:`ConfigNotFoundError` or
    :class:`InvalidConfigError`.
    """
    config = {}
    if args.config:
        config = load_yaml_config(args.config)

    cli_values = {
        'patterns': args.patterns,
        'output': args.output,
        'exclude': args.exclude,
        'root': args.root,
        'encoding': args.encoding,
        'newline': args.newline,
        'max_size': args.max_size,
    }
    for key, value in cli_values.items():
        if value is not None:
            config[key] = value
    if args.no_separator:
        config['no_separator'] = True
    if args.ignore_gitignore:
        config['ignore_gitignore'] = True

    return validate_config(config, source=args.config or "command line")


def make_configs(settings, *, dry_run=False):
    """Freeze validated settings into ``(SelectionConfig, OutputConfig)``."""
    selection = SelectionConfig(
        root=Path(settings['root']),
        patterns=tuple(settings['patterns']),
        excludes=tuple(settings['exclude']),
        max_size=settings['max_size'],
        ignore_gitignore=settings['ignore_gitignore'],
    )
    output_opts = OutputConfig(
        output=Path(settings['output']),
        separators=not settings['no_separator'],
        encoding=settings['encoding'],
        newline=settings['newline'],
        dry_run=dry_run,
    )
    return selection, output_opts


def _check_root(root):
    try:
        is_directory = root.is_dir()
        exists = is_directory or root.exists()
    except OSError as exc:
        raise InvalidConfigError(f"Unable to access root directory '{root}': {exc}") from exc
    if not exists:
        raise InvalidConfigError(f"Root directory does not exist: {root}")
    if not is_directory:
        raise InvalidConfigError(f"Root path is not a directory: {root}")


def main(argv=None):
    """Main function to parse arguments and run the tool."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"filecombine v{__version__}")
        sys.exit(0)

    if args.debug:
        args.verbose = True
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s')
    # basicConfig is a no-op when handlers already exist
    logging.getLogger().setLevel(level)

    try:
        settings = resolve_settings(args)
    except ConfigNotFoundError as e:
        logging.error("Could not find the configuration file '%s'.", args.config)
        logging.debug("Missing configuration details: %s", e, exc_info=True)
        sys.exit(1)
    except InvalidConfigError as e:
        logging.error("Invalid configuration: %s", e)
        logging.debug("Configuration validation traceback:", exc_info=True)
        sys.exit(1)

    missing = [
        flag for flag, key in (('-p', 'patterns'), ('-o', 'output')) if not settings[key]
    ]
    if missing:
        parser.print_usage(sys.stderr)
        logging.error("Missing required option(s): %s", ", ".join(missing))
        sys.exit(1)

    selection, output_opts = make_configs(settings, dry_run=args.dry_run)
    logging.debug(
        "Declared output encoding: %s (content is written unchanged)", output_opts.encoding
    )

    try:
        _check_root(selection.root)
    except InvalidConfigError as e:
        logging.error("%s", e)
        sys.exit(1)

    exclude_patterns = gather_exclusions(selection)

    logging.info("Searching for files...")
    found, skipped = select_files(selection, exclude_patterns)
    files = exclude_output_file(found, output_opts.output)

    print_summary(selection, output_opts, files, skipped)

    if not found:
        logging.error("No files found matching the patterns")
        sys.exit(1)
    if not files:
        logging.error("No files to combine after excluding the output file")
        sys.exit(1)

    if output_opts.dry_run:
        print("Dry-run mode: No files were modified")
        return

    logging.info("Combining files...")
    try:
        result = combine_files(files, selection, output_opts)
    except CombineError as e:
        logging.error("%s", e)
        logging.debug("Output setup traceback:", exc_info=True)
        sys.exit(2)

    print_result(result)
    if result.success_count == 0:
        logging.error("None of the selected files could be read")
        sys.exit(1)


if __name__ == "__main__":
    main()
