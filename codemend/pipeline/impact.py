"""Blast-radius estimate for a proposed fix.

Risk contributions:
    removed definitions (def/class)            +0.2
    breaking signature changes                 +0.3
    file imports more than 5 modules           +0.1
    more than 10 files reference the module    +0.2
    each dependent using a removed name        +0.05 (max 0.3)
    earlier fixes in this file were rolled back +0.2
    critical severity                          +0.1
Levels: >= 0.7 high, >= 0.4 medium, otherwise low.
"""
from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import structlog

from codemend.crawler.files import iter_source_files
from codemend.models.issue import Fix, Issue, ReviewStatus, Severity
from codemend.models.pipeline import ImpactReport
from codemend.storage.interfaces import IssueStore

logger = structlog.get_logger(__name__)

_DEF_RE = re.compile(r"^\s*(?:async\s+)?(def|class)\s+(\w+)\s*(\([^)]*\))?", re.MULTILINE)
_JS_DEF_RE = re.compile(r"^\s*(?:export\s+)?(?:async\s+)?(function|class)\s+(\w+)\s*(\([^)]*\))?", re.MULTILINE)
_IMPORT_RE = re.compile(r"^\s*(?:import\s+[\w.]+|from\s+[\w.]+\s+import|.*\brequire\(|import\s+.*\bfrom\b)", re.MULTILINE)

HIGH_RISK = 0.7
MEDIUM_RISK = 0.4


def risk_level(score: float) -> str:
    if score >= HIGH_RISK:
        return "high"
    if score >= MEDIUM_RISK:
        return "medium"
    return "low"


def _definitions(code: str) -> Dict[str, str]:
    found = {}
    for pattern in (_DEF_RE, _JS_DEF_RE):
        for match in pattern.finditer(code):
            found[match.group(2)] = re.sub(r"\s+", "", match.group(3) or "")
    return found


def compare_definitions(original: str, new: str) -> Tuple[List[str], List[str]]:
    """Returns (removed names, names whose parameter list changed)."""
    before = _definitions(original)
    after = _definitions(new)
    removed = sorted(name for name in before if name not in after)
    changed = sorted(name for name in before if name in after and before[name] != after[name])
    return removed, changed


class ImpactPredictor:
    def __init__(
        self,
        issue_store: Optional[IssueStore] = None,
        root: Optional[str] = None,
        extensions: Tuple[str, ...] = (".py", ".js", ".jsx", ".ts", ".tsx"),
        max_scan_files: int = 2000,
    ):
        self.issue_store = issue_store
        self.root = root
        self.extensions = extensions
        self.max_scan_files = max_scan_files

    async def predict(self, issue: Issue, fix: Optional[Fix] = None, root: Optional[str] = None) -> ImpactReport:
        """Never raises: a failed prediction reports medium risk."""
        try:
            return await self._predict(issue, fix, root or self.root)
        except Exception as e:
            logger.warning("impact_prediction_failed", issue_id=issue.id, error=str(e))
            return ImpactReport(
                file_path=issue.file_path,
                risk_score=0.5,
                risk_level="medium",
                confidence=0.3,
                recommendations=[f"Impact prediction failed ({e}); review manually."],
            )

    async def _predict(self, issue: Issue, fix: Optional[Fix], root: Optional[str]) -> ImpactReport:
        path = Path(issue.file_path)
        project_root = Path(root) if root else path.parent
        loop = asyncio.get_running_loop()
        file_text, dependents = await loop.run_in_executor(None, self._scan, path, project_root)

        risk = 0.0
        recommendations: List[str] = []
        breaking: List[str] = []
        removed: List[str] = []
        cascade: List[str] = []

        if fix is not None:
            removed, changed = compare_definitions(fix.original_code, fix.code)
            breaking = [f"signature of '{name}' changed" for name in changed]
            if breaking:
                risk += 0.3
                recommendations.append("Update callers of the changed signatures.")
            if removed:
                risk += 0.2
                breaking += [f"'{name}' removed" for name in removed]

        if len(_IMPORT_RE.findall(file_text)) > 5:
            risk += 0.1
        if len(dependents) > 10:
            risk += 0.2
            recommendations.append(f"{len(dependents)} files depend on this module; run the full test suite.")

        if removed:
            cascade = [
                dep for dep, text in dependents.items()
                if any(re.search(rf"\b{re.escape(name)}\b", text) for name in removed)
            ]
            if cascade:
                risk += min(0.3, 0.05 * len(cascade))
                recommendations.append("Dependent files use removed names; expect cascade failures.")

        if await self._has_rollback_history(issue):
            risk += 0.2
            recommendations.append("Earlier fixes in this file were rolled back.")

        if issue.severity == Severity.CRITICAL:
            risk += 0.1

        risk = min(1.0, risk)
        confidence = 0.5 + (0.2 if dependents else 0.0) + (0.3 if fix is not None else 0.0)
        report = ImpactReport(
            file_path=issue.file_path,
            risk_score=round(risk, 4),
            risk_level=risk_level(risk),
            dependent_files=sorted(dependents),
            breaking_changes=breaking,
            cascade_candidates=sorted(cascade),
            recommendations=recommendations,
            confidence=min(1.0, confidence),
        )
        logger.info("impact_predicted", issue_id=issue.id, risk=report.risk_score, level=report.risk_level)
        return report

    def _scan(self, path: Path, project_root: Path) -> Tuple[str, Dict[str, str]]:
        file_text = path.read_text(encoding="utf-8") if path.is_file() else ""
        module = path.stem
        reference = re.compile(rf"(?:import\s+.*\b{re.escape(module)}\b|from\s+[\w.]*\b{re.escape(module)}\b|require\(.*{re.escape(module)})")
        dependents: Dict[str, str] = {}
        if not project_root.is_dir():
            return file_text, dependents
        for index, candidate in enumerate(iter_source_files(str(project_root), self.extensions)):
            if index >= self.max_scan_files:
                break
            if candidate.resolve() == path.resolve():
                continue
            try:
                text = candidate.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            if reference.search(text):
                dependents[str(candidate)] = text
        return file_text, dependents

    async def _has_rollback_history(self, issue: Issue) -> bool:
        if self.issue_store is None:
            return False
        rolled_back = await self.issue_store.list_issues(
            status=ReviewStatus.ROLLED_BACK, file_path=issue.file_path, limit=1
        )
        return bool(rolled_back)
