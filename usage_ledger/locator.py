import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import ConfigurationError

logger = logging.getLogger(__name__)

CLAUDE_CONFIG_DIR_ENV = "CLAUDE_CONFIG_DIR"
CLAUDE_PROJECTS_DIR_NAME = "projects"
CODEX_HOME_ENV = "CODEX_HOME"
CODEX_SESSIONS_DIR_NAME = "sessions"
USAGE_FILE_GLOB = "**/*.jsonl"
UNKNOWN_PROJECT = "Unknown Project"

MAX_GLOB_WORKERS = 8


def default_claude_roots() -> List[Path]:
    """Claude Code 的默认数据目录（新位置在前，旧位置在后）"""
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "").strip()
    config_home = Path(xdg_config) if xdg_config else Path.home() / ".config"
    return [config_home / "claude", Path.home() / ".claude"]


def default_codex_roots() -> List[Path]:
    return [Path.home() / ".codex"]


def _split_env_paths(value: str) -> List[Path]:
    return [Path(part.strip()).expanduser() for part in value.split(",") if part.strip()]


def _resolve_roots(env_name: str, defaults: Iterable[Path], subdir: str) -> List[Path]:
    """返回包含 subdir 子目录的根目录列表，按绝对路径去重

    环境变量存在时只使用其中列出的目录，不再回退到默认目录。
    """
    env_value = os.environ.get(env_name, "").strip()
    candidates = _split_env_paths(env_value) if env_value else list(defaults)

    roots: List[Path] = []
    seen = set()
    for candidate in candidates:
        resolved = candidate.resolve()
        if resolved in seen:
            continue
        if (resolved / subdir).is_dir():
            seen.add(resolved)
            roots.append(resolved)
        else:
            logger.debug(f"跳过无效数据目录 {candidate}（缺少 {subdir}/ 子目录）")

    if not roots:
        if env_value:
            raise ConfigurationError(
                f"环境变量 {env_name} 中没有有效的目录（每个目录都必须包含 {subdir}/ 子目录）: {env_value}"
            )
        searched = ", ".join(str(c) for c in candidates)
        raise ConfigurationError(f"未找到有效的数据目录，已搜索: {searched}")
    return roots


def get_claude_paths() -> List[Path]:
    return _resolve_roots(CLAUDE_CONFIG_DIR_ENV, default_claude_roots(), CLAUDE_PROJECTS_DIR_NAME)


def get_codex_paths() -> List[Path]:
    return _resolve_roots(CODEX_HOME_ENV, default_codex_roots(), CODEX_SESSIONS_DIR_NAME)


def resolve_data_dirs(data_dirs: Sequence[Path], subdir: str = CLAUDE_PROJECTS_DIR_NAME) -> List[Path]:
    """解析命令行指定的数据目录

    既可以是包含 subdir 的根目录，也可以直接是 subdir 本身。
    """
    roots: List[Path] = []
    for data_dir in data_dirs:
        path = Path(data_dir).expanduser().resolve()
        if (path / subdir).is_dir():
            roots.append(path)
        elif path.is_dir() and path.name == subdir:
            roots.append(path.parent)
        else:
            logger.warning(f"数据目录不存在或缺少 {subdir}/ 子目录: {path}")
    if not roots:
        raise ConfigurationError("指定的数据目录均无效: " + ", ".join(str(d) for d in data_dirs))
    return roots


def _glob_root(base_dir: Path) -> List[Tuple[Path, Path]]:
    try:
        return [(path, base_dir) for path in sorted(base_dir.glob(USAGE_FILE_GLOB)) if path.is_file()]
    except OSError as e:
        logger.warning(f"无法遍历目录 {base_dir}: {e}")
        return []


def glob_usage_files(roots: Sequence[Path], subdir: str = CLAUDE_PROJECTS_DIR_NAME) -> List[Tuple[Path, Path]]:
    """并发遍历每个根目录，返回 (文件路径, 基准目录) 列表，顺序与根目录顺序一致"""
    base_dirs = [Path(root) / subdir for root in roots]
    if not base_dirs:
        return []
    workers = min(MAX_GLOB_WORKERS, len(base_dirs))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = list(executor.map(_glob_root, base_dirs))
    files = [item for result in results for item in result]
    logger.info(f"在 {len(base_dirs)} 个目录中找到 {len(files)} 个JSONL文件")
    return files


def describe_file(path: Path, base_dir: Optional[Path]) -> Tuple[str, str, str]:
    """根据文件相对基准目录的路径得到 (项目名, 项目路径, 会话ID)

    .../<project>/<session>/<file>.jsonl 中会话ID取倒数第二段，项目路径为其之前的部分；
    <project>/<file>.jsonl 时会话ID取文件名。
    """
    try:
        parts = path.relative_to(base_dir).parts if base_dir is not None else (path.name,)
    except ValueError:
        parts = (path.name,)

    if len(parts) >= 3:
        project_path = "/".join(parts[:-2])
        session_id = parts[-2]
    elif len(parts) == 2:
        project_path = parts[0]
        session_id = Path(parts[1]).stem
    else:
        project_path = UNKNOWN_PROJECT
        session_id = Path(parts[0]).stem if parts else "unknown"

    project = parts[0] if len(parts) >= 2 else UNKNOWN_PROJECT
    return project, project_path, session_id
