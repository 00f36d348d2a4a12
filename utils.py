import codecs
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import yaml


DEFAULT_MAX_SIZE = 100 * 1024 * 1024
SNIFF_SIZE = 8192
BINARY_CONTROL_RATIO = 0.3
GITIGNORE_FILENAME = ".gitignore"

DEFAULT_CONFIG = {
    'patterns': [],
    'output': None,
    'exclude': [],
    'root': '.',
    'no_separator': False,
    'encoding': 'utf-8',
    'newline': 'lf',
    'max_size': DEFAULT_MAX_SIZE,
    'ignore_gitignore': False,
}

NEWLINES = MappingProxyType({
    'lf': b'\n',
    'crlf': b'\r\n',
    'cr': b'\r',
})

_SIZE_UNITS = {
    '': 1,
    'b': 1,
    'k': 1024,
    'kb': 1024,
    'm': 1024 ** 2,
    'mb': 1024 ** 2,
    'g': 1024 ** 3,
    'gb': 1024 ** 3,
    't': 1024 ** 4,
    'tb': 1024 ** 4,
}
_SIZE_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$')


class ConfigNotFoundError(FileNotFoundError):
    """Raised when the configuration file cannot be found."""


class InvalidConfigError(Exception):
    """Raised when the configuration file or a command-line value is invalid."""


class CombineError(Exception):
    """Raised when the output artifact cannot be set up."""


class OutputDirectoryError(CombineError):
    """Raised when the output file's parent directory cannot be created."""


class OutputFileError(CombineError):
    """Raised when the output file cannot be created."""


@dataclass(frozen=True)
class CommentStyle:
    """Comment syntax used to wrap a file separator."""

    single_line: str | None = None
    block_start: str | None = None
    block_end: str | None = None

    @property
    def is_block(self):
        return bool(self.block_start and self.block_end)


DEFAULT_COMMENT_STYLE = CommentStyle(single_line='#')

_HASH = CommentStyle(single_line='#')
_SLASH = CommentStyle(single_line='//', block_start='/*', block_end='*/')
_MARKUP = CommentStyle(block_start='<!--', block_end='-->')

COMMENT_STYLES = MappingProxyType({
    # '#' comments
    '.py': _HASH,
    '.rb': _HASH,
    '.sh': _HASH,
    '.bash': _HASH,
    '.zsh': _HASH,
    '.yaml': _HASH,
    '.yml': _HASH,
    '.toml': _HASH,
    '.conf': _HASH,
    '.ini': _HASH,
    '.r': _HASH,
    '.pl': _HASH,
    '.pm': _HASH,
    '.txt': _HASH,
    # C family
    '.js': _SLASH,
    '.ts': _SLASH,
    '.jsx': _SLASH,
    '.tsx': _SLASH,
    '.java': _SLASH,
    '.c': _SLASH,
    '.cpp': _SLASH,
    '.cc': _SLASH,
    '.h': _SLASH,
    '.hpp': _SLASH,
    '.cs': _SLASH,
    '.go': _SLASH,
    '.swift': _SLASH,
    '.kt': _SLASH,
    '.scala': _SLASH,
    '.rs': _SLASH,
    '.dart': _SLASH,
    '.php': _SLASH,
    # Markup and stylesheets
    '.html': _MARKUP,
    '.xml': _MARKUP,
    '.svg': _MARKUP,
    '.md': _MARKUP,
    '.css': CommentStyle(block_start='/*', block_end='*/'),
    '.scss': _SLASH,
    '.less': _SLASH,
    '.sass': CommentStyle(single_line='//'),
    # Others
    '.sql': CommentStyle(single_line='--', block_start='/*', block_end='*/'),
    '.lisp': CommentStyle(single_line=';'),
    '.clj': CommentStyle(single_line=';'),
    '.scm': CommentStyle(single_line=';'),
    '.lua': CommentStyle(single_line='--', block_start='--[[', block_end=']]'),
    '.bat': CommentStyle(single_line='REM'),
    '.cmd': CommentStyle(single_line='REM'),
    '.vb': CommentStyle(single_line="'"),
    '.m': CommentStyle(single_line='%'),
    '.tex': CommentStyle(single_line='%'),
    '.rst': CommentStyle(single_line='..'),
})

BINARY_EXTENSIONS = frozenset({
    '.exe', '.dll', '.so', '.dylib', '.bin', '.dat',
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.ico',
    '.mp3', '.mp4', '.wav', '.avi', '.mov', '.flv',
    '.zip', '.tar', '.gz', '.bz2', '.7z', '.rar',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.pyc', '.pyo', '.class', '.o', '.obj',
})

TEXT_EXTENSIONS = frozenset({
    '.js', '.ts', '.jsx', '.tsx', '.json',
    '.html', '.htm', '.xml', '.css', '.scss',
    '.sass', '.less', '.md', '.txt', '.csv',
    '.py', '.rb', '.java', '.c', '.cpp',
    '.h', '.hpp', '.go', '.rs', '.php',
    '.sh', '.bash', '.zsh', '.bat', '.cmd',
    '.ps1', '.yaml', '.yml', '.toml', '.ini',
    '.conf', '.cfg', '.sql', '.r', '.m',
    '.pl', '.pm', '.lua', '.swift', '.kt',
    '.dart', '.vue', '.svelte', '.astro',
    '.cs', '.vb', '.fs', '.lisp', '.clj',
    '.scm', '.scala', '.erl', '.ex', '.exs',
    '.dockerfile', '.gitignore', '.env', '.editorconfig',
    '.rst', '.adoc', '.textile', '.org',
})

# Tab, LF and CR do not count towards the control-character ratio.
_ALLOWED_CONTROL_BYTES = frozenset({9, 10, 13})


def file_extension(path):
    """Return the lowercased extension of ``path`` including the dot.

    Unlike :attr:`pathlib.PurePath.suffix`, dotfiles keep their whole name as
    the extension, so ``.gitignore`` maps to ``'.gitignore'``.
    """
    name = Path(path).name
    index = name.rfind('.')
    if index == -1:
        return ''
    return name[index:].lower()


def comment_style_for(path):
    """Return the :class:`CommentStyle` registered for ``path``'s extension."""
    return COMMENT_STYLES.get(file_extension(path), DEFAULT_COMMENT_STYLE)


def _looks_binary(file_path):
    """Sniff the first bytes of ``file_path`` for binary content.

    Read failures are reported as binary so unreadable files never reach the
    output.
    """
    try:
        with open(file_path, 'rb') as f:
            sample = f.read(SNIFF_SIZE)
    except OSError as exc:
        logging.debug("Could not sniff %s: %s", file_path, exc)
        return True

    if not sample:
        return False
    if b'\x00' in sample:
        return True

    control = sum(
        1 for byte in sample if byte < 0x20 and byte not in _ALLOWED_CONTROL_BYTES
    )
    return control / len(sample) > BINARY_CONTROL_RATIO


def is_binary_file(file_path):
    """Return ``True`` when ``file_path`` should be treated as binary.

    Known binary extensions win first, then the text whitelist, and only
    unknown extensions pay for a content read.
    """
    ext = file_extension(file_path)
    if ext in BINARY_EXTENSIONS:
        return True
    if ext in TEXT_EXTENSIONS:
        return False
    return _looks_binary(file_path)


def newline_bytes(name):
    """Return the byte sequence for a newline name (``lf``, ``crlf`` or ``cr``)."""
    try:
        return NEWLINES[name.lower()]
    except (KeyError, AttributeError):
        raise InvalidConfigError(
            f"Invalid newline type '{name}'; expected one of: {', '.join(NEWLINES)}"
        ) from None


def load_gitignore(root):
    """Return the exclusion patterns listed in ``root``'s ``.gitignore``."""
    gitignore_path = Path(root) / GITIGNORE_FILENAME
    patterns = []
    try:
        with open(gitignore_path, 'r', encoding='utf-8', errors='replace') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    patterns.append(line)
    except FileNotFoundError:
        return []
    except OSError as exc:
        logging.warning("Could not read %s: %s", gitignore_path, exc)
        return []

    logging.info("Loaded %d patterns from %s", len(patterns), GITIGNORE_FILENAME)
    return patterns


def parse_size_value(value):
    """Convert a size such as ``1048576``, ``"10KB"`` or ``"2.5 mb"`` to bytes."""
    if value is None or value == '':
        return 0
    if isinstance(value, bool):
        raise InvalidConfigError(f"Invalid size value: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise InvalidConfigError(f"Size must not be negative: {value}")
        return value

    match = _SIZE_RE.match(str(value))
    if not match:
        raise InvalidConfigError(f"Invalid size value: '{value}'")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise InvalidConfigError(
            f"Invalid size unit '{unit}' in '{value}'; use B, KB, MB, GB or TB."
        )
    return int(float(number) * multiplier)


def split_patterns(value):
    """Split a comma-separated string (or list) into stripped, non-empty patterns."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(',')
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise InvalidConfigError(
            f"Expected a comma-separated string or a list, but got: {type(value).__name__}"
        )

    patterns = []
    for item in items:
        if not isinstance(item, str):
            raise InvalidConfigError(
                f"Pattern must be a string, but got: {type(item).__name__}"
            )
        item = item.strip()
        if item:
            patterns.append(item)
    return patterns


def validate_encoding(name):
    """Return ``name`` if Python knows the codec, else raise ``InvalidConfigError``."""
    try:
        codecs.lookup(name)
    except (LookupError, TypeError):
        raise InvalidConfigError(f"Unknown encoding: '{name}'") from None
    return name


def load_yaml_config(config_file_path):
    """Load a YAML configuration file with basic error handling."""
    logging.info("Loading configuration from: %s", config_file_path)
    try:
        with open(config_file_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            if config is None:
                raise ValueError("Configuration file is empty or invalid.")
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a mapping of settings.")
            return config
    except FileNotFoundError as e:
        raise ConfigNotFoundError(
            f"Configuration file not found at '{config_file_path}'."
        ) from e
    except yaml.YAMLError as e:
        mark = getattr(e, 'problem_mark', None)
        location = ""
        if mark:
            location = f" at line {mark.line + 1}, column {mark.column + 1}"

        problem = getattr(e, 'problem', None) or str(e)
        context = getattr(e, 'context', None)
        details = f"{context}: {problem}" if context else problem

        hint = None
        if isinstance(e, yaml.scanner.ScannerError) and context:
            if 'quoted scalar' in context:
                hint = "Check for missing closing quotes in your YAML file."

        message = f"Error parsing YAML file{location}: {details}"
        if hint:
            message = f"{message} ({hint})"

        raise InvalidConfigError(message) from e
    except ValueError as e:
        raise InvalidConfigError(str(e)) from e


def _validate_bool(config, key):
    value = config.get(key)
    if not isinstance(value, bool):
        raise InvalidConfigError(f"'{key}' must be a boolean value")


def _validate_optional_str(config, key):
    value = config.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidConfigError(f"'{key}' must be a string")


def validate_config(config, *, source=None):
    """Apply defaults to ``config`` and normalize its values in place.

    Unknown keys are reported and dropped. ``source`` names where the values
    came from and is only used for messages.
    """
    where = f" in {source}" if source else ""
    for key in list(config):
        if key not in DEFAULT_CONFIG:
            logging.warning("Unknown setting '%s'%s; it will be ignored.", key, where)
            del config[key]

    for key, value in DEFAULT_CONFIG.items():
        if config.get(key) is None and value is not None:
            config[key] = list(value) if isinstance(value, list) else value

    for key in ('no_separator', 'ignore_gitignore'):
        _validate_bool(config, key)
    for key in ('output', 'root', 'encoding', 'newline'):
        _validate_optional_str(config, key)

    config['patterns'] = [
        validate_glob_pattern(p, context=f"patterns[{i}]")
        for i, p in enumerate(split_patterns(config['patterns']))
    ]
    config['exclude'] = split_patterns(config['exclude'])
    config['max_size'] = parse_size_value(config['max_size'])
    config['newline'] = config['newline'].lower()
    newline_bytes(config['newline'])
    validate_encoding(config['encoding'])
    return config


def validate_glob_pattern(pattern, *, context="glob pattern"):
    """Warn about potentially problematic glob patterns."""
    if not isinstance(pattern, str):
        raise InvalidConfigError(
            f"Glob pattern in {context} must be a string, but got: {type(pattern).__name__}"
        )

    normalized = pattern
    if '\\' in pattern and os.sep == '\\':
        normalized = pattern.replace('\\', '/')
        normalized = re.sub(r'/+', '/', normalized)
        logging.warning(
            "Glob pattern in %s ('%s') uses backslashes; treating them as '/' for cross-platform matching.",
            context,
            pattern,
        )

    if normalized.startswith('/') or (len(normalized) > 1 and normalized[1] == ':'):
        logging.warning(
            "Glob pattern in %s ('%s') looks like an absolute path. "
            "Patterns are matched relative to the search root. This may not work as expected.",
            context,
            pattern,
        )

    if '(' in normalized or ')' in normalized or '+' in normalized:
        logging.warning(
            "Glob pattern in %s ('%s') contains characters that may be "
            "interpreted as regular expression syntax, but this tool uses glob patterns. "
            "Special glob characters are *, ?, [].",
            context,
            pattern,
        )

    if normalized.count('[') != normalized.count(']'):
        logging.warning(
            "Glob pattern in %s ('%s') has mismatched brackets '[' and ']'. "
            "This may cause unexpected matching behavior.",
            context,
            pattern,
        )

    return normalized
