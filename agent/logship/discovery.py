import logging

from pathlib import Path
from typing import Iterator, NamedTuple

log = logging.getLogger("discovery")

class Root(NamedTuple):
	path: Path
	tag: str

class DiscoveredFile(NamedTuple):
	path: Path
	depth: int
	tag: str

def make_roots(entries) -> list[Root]:
	"""
	Accepts plain paths or {"path": ..., "tag": ...} dicts. A root without a
	tag is tagged after its last path component.
	"""

	roots = []

	for entry in entries:
		if isinstance(entry, Root):
			roots.append(entry)

			continue

		if isinstance(entry, dict):
			path = Path(entry["path"])
			tag = entry.get("tag") or path.name or "root"

		else:
			path = Path(entry)
			tag = path.name or "root"

		roots.append(Root(path, tag))

	return roots

def depth_pattern(depth: int, pattern: str) -> str:
	# depth 2, "*.log" -> "*/*/*.log"
	return "/".join(["*"] * depth + [pattern])

def discover(roots, max_depth: int, pattern: str = "*.log") -> Iterator[DiscoveredFile]:
	"""
	Lazily enumerate files matching `pattern` under each root, at depths
	0..max_depth inclusive. Depth bounds the walk, so symlink cycles are
	harmless. Missing roots are skipped.
	"""

	seen = set()

	for root in make_roots(roots):
		if not root.path.is_dir():
			log.warning(f"Root not found, skipping: {root.path}")

			continue

		for depth in range(max_depth + 1):
			try:
				matches = sorted(root.path.glob(depth_pattern(depth, pattern)))

			except OSError as e:
				log.warning(f"{root.path}: scan failed at depth {depth}: {e}")

				continue

			for path in matches:
				if path in seen:
					continue

				try:
					if not path.is_file():
						continue

				except OSError:
					continue

				seen.add(path)

				yield DiscoveredFile(path, depth, f"{root.tag}.depth{depth}")
