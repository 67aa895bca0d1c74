"""Identity resolution between commit authors and remote users.

``IdentityResolver`` maps a ``LocalAuthor`` (name + email as written in a
commit) to exactly one ``RemoteIdentity``. Mappings come from a
human-editable user map file and from on-demand searches against the
identity service. The file looks like::

    # The file provides mapping between Git users and known TFS user
    # ...

    [mapping]
        Jane Doe <jane@example.com> = CORP\\jane

    [unknown]
        Ghost <ghost@example.com> =

    [duplicates]
        Sam <sam@example.com> = CORP\\sam
        Sam <sam@example.com> = CORP\\samuel

Only ``[mapping]`` is parsed back; the other two sections tell a human
what still needs curating. Rows are appended, never overwritten, and the
previous file is kept as ``<file>.bak`` on every save.
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Iterable, Sequence

from tf_bridge.bridge.models import LocalAuthor, RemoteIdentity, SearchFactor
from tf_bridge.core.interfaces import RemoteIdentityService
from tf_bridge.errors import AmbiguousIdentity, IdentityNotFound
from tf_bridge.file_handler import write_atomic
from tf_bridge.validators import validate_tfs_user

logger = logging.getLogger(__name__)

MAPPING_SECTION = "[mapping]"
UNKNOWN_SECTION = "[unknown]"
DUPLICATES_SECTION = "[duplicates]"

INDENT = "    "
MAX_HEADER_LINE = 60

FILE_HEADER = (
    "The file provides mapping between Git users and known TFS user unique "
    "names. The Git user has to be represented as it appears in Git commits, "
    "including the user name and e-mail address. The TFS user has to be "
    "represented either as DOMAIN\\account (for on-premises TFS) or as "
    "Windows Live ID (for hosted TFS)."
)
MAPPING_HEADER = (
    "The section contains mapping between Git users and TFS users. Add new "
    "mappings to this section as needed. Only this section is parsed when "
    "the file is used in a check-in command."
)
UNKNOWN_HEADER = (
    "The section contains Git user names found in commits that cannot be "
    "mapped to TFS users automatically. You should provide mapping for "
    "these names or stop keeping commit authors on check-in. This section "
    f"is not parsed, move resolved mappings to the {MAPPING_SECTION} section."
)
DUPLICATES_HEADER = (
    "The section contains Git user names found in commits for which the "
    "automatic mapping found more than one TFS user. You should provide a "
    "unique mapping for these names. This section is not parsed, move "
    f"resolved mappings to the {MAPPING_SECTION} section."
)

_GIT_USER = re.compile(r"^(?P<name>[^<>]+?)\s*<(?P<email>[^<>\s]+)>$")

# (factor, use the email rather than the name)
_SEARCH_ORDER: tuple[tuple[SearchFactor, bool], ...] = (
    (SearchFactor.GENERAL, True),
    (SearchFactor.MAIL_ADDRESS, True),
    (SearchFactor.GENERAL, False),
)

AuthorKey = tuple[str, str]


def wrap_comment(text: str) -> list[str]:
    """Wrap *text* into ``# ``-prefixed lines of about MAX_HEADER_LINE chars."""
    lines: list[str] = []
    current = "#"
    for word in text.split(" "):
        if not word:
            continue
        if len(current) > MAX_HEADER_LINE:
            lines.append(current)
            current = "#"
        current += " " + word
    if len(current) > 1:
        lines.append(current)
    return lines


def _strip_comment(line: str) -> str:
    positions = [p for p in (line.find("#"), line.find(";")) if p >= 0]
    if not positions:
        return line.strip()
    return line[: min(positions)].strip()


def parse_local_author(text: str) -> LocalAuthor:
    """Parse ``Name <email>``.

    Raises:
        ValueError: If *text* is not in that form.
    """
    match = _GIT_USER.match(text.strip())
    if match is None:
        raise ValueError(f"Incorrect Git user information: {text!r}")
    return LocalAuthor(
        name=match.group("name").strip(), email=match.group("email").strip()
    )


class IdentityResolver:
    """Resolve local authors to remote identities.

    Args:
        service: Identity service used on cache misses. ``None`` restricts
            resolution to the user map file.
        path: Location of the user map file (optional).
    """

    def __init__(
        self,
        service: RemoteIdentityService | None = None,
        path: Path | None = None,
    ) -> None:
        self.service = service
        self.path = path
        self._authors: dict[AuthorKey, LocalAuthor] = {}
        self._mapping: dict[AuthorKey, list[RemoteIdentity]] = {}
        self._searched: set[AuthorKey] = set()
        self._changed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_changed(self) -> bool:
        return self._changed

    @property
    def is_consistent(self) -> bool:
        """True when no author maps to more than one identity."""
        return all(len(c) == 1 for c in self._mapping.values())

    @property
    def is_complete(self) -> bool:
        """True when every registered author has at least one candidate."""
        return all(key in self._mapping for key in self._authors)

    def unknown_authors(self) -> list[LocalAuthor]:
        return [a for k, a in self._authors.items() if k not in self._mapping]

    def ambiguous_authors(self) -> dict[LocalAuthor, list[RemoteIdentity]]:
        return {
            self._authors[k]: list(c)
            for k, c in self._mapping.items()
            if len(c) > 1
        }

    def add_local_authors(self, authors: Iterable[LocalAuthor]) -> None:
        """Register authors ahead of resolution so searches can be batched."""
        for author in authors:
            self._authors.setdefault(author.key, author)

    def map(self, author: LocalAuthor, identity: RemoteIdentity) -> None:
        """Append *identity* as a candidate for *author*."""
        self._authors.setdefault(author.key, author)
        candidates = self._mapping.setdefault(author.key, [])
        if any(
            c.unique_name.lower() == identity.unique_name.lower()
            for c in candidates
        ):
            return
        candidates.append(identity)
        self._changed = True

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, author: LocalAuthor) -> RemoteIdentity:
        """Return the single remote identity for *author*.

        Raises:
            IdentityNotFound: No identity matches.
            AmbiguousIdentity: More than one identity matches.
        """
        if author.key not in self._mapping:
            self.add_local_authors([author])
            self.search_remote([author])

        candidates = self._mapping.get(author.key)
        if not candidates:
            raise IdentityNotFound(
                f"The Git user {author} is not mapped to a TFS identity",
                author=str(author),
            )
        if len(candidates) > 1:
            raise AmbiguousIdentity(
                f"The Git user {author} is mapped to more than one TFS identity",
                candidates=[c.unique_name for c in candidates],
                author=str(author),
            )
        return candidates[0]

    def search_remote(
        self, authors: Sequence[LocalAuthor] | None = None
    ) -> int:
        """Search the identity service for unmapped authors.

        Issues at most one batched query per search factor: the email as
        a general search term, then the email as a mail address, then the
        name as a general search term.

        Returns:
            Number of authors that gained at least one candidate.
        """
        if self.service is None:
            return 0
        pool = authors if authors is not None else list(self._authors.values())
        pending = [
            a
            for a in pool
            if a.key not in self._mapping and a.key not in self._searched
        ]
        found = 0
        for factor, by_email in _SEARCH_ORDER:
            unmapped = [a for a in pending if a.key not in self._mapping]
            values = sorted(
                {(a.email if by_email else a.name).strip() for a in unmapped}
                - {""}
            )
            if not values:
                break
            logger.debug(
                "Searching %d identities by %s (%s)",
                len(values),
                factor.value,
                "email" if by_email else "name",
            )
            results = self.service.read_identities(factor, values)
            for author in unmapped:
                value = (author.email if by_email else author.name).strip()
                for identity in results.get(value) or []:
                    self.map(author, identity)
                if author.key in self._mapping:
                    found += 1
        self._searched.update(a.key for a in pending)
        return found

    def local_author_for(self, unique_name: str) -> LocalAuthor | None:
        """Reverse lookup used when turning changesets into commits."""
        wanted = unique_name.lower()
        for key, candidates in self._mapping.items():
            if len(candidates) == 1 and candidates[0].unique_name.lower() == wanted:
                return self._authors[key]
        return None

    def check(self) -> list[str]:
        """Re-validate every mapped identity against the service.

        Mappings to identities that vanished, became ambiguous or were
        renamed are dropped.

        Returns:
            Unique names whose mappings were removed.
        """
        if self.service is None:
            return []
        logger.info("Checking user mapping")
        names = sorted(
            {c.unique_name for cs in self._mapping.values() for c in cs}
        )
        if not names:
            return []
        results = self.service.read_identities(SearchFactor.GENERAL, names)
        removed: list[str] = []
        for name in names:
            found = results.get(name) or []
            if not found:
                logger.warning(
                    'No identity matching "%s" found on the TFS server', name
                )
            elif len(found) > 1:
                logger.warning(
                    'Multiple identities matching "%s" found on the TFS server',
                    name,
                )
            elif found[0].unique_name.lower() != name.lower():
                logger.warning(
                    'Identity "%s" has changed on the TFS server', name
                )
            else:
                continue
            self._remove_mappings_to(name)
            removed.append(name)
        return removed

    def _remove_mappings_to(self, unique_name: str) -> None:
        wanted = unique_name.lower()
        for key in list(self._mapping):
            kept = [
                c for c in self._mapping[key] if c.unique_name.lower() != wanted
            ]
            if kept:
                self._mapping[key] = kept
            else:
                del self._mapping[key]
        self._changed = True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Read ``[mapping]`` rows from the user map file.

        Malformed rows are logged and ignored.

        Returns:
            Number of rows loaded.
        """
        if self.path is None or not self.path.exists():
            return 0

        loaded = 0
        in_mapping = False
        with open(self.path, encoding="utf-8") as fh:
            for number, raw in enumerate(fh, start=1):
                line = _strip_comment(raw)
                if not line:
                    continue
                if line.startswith("[") and line.endswith("]"):
                    in_mapping = line.lower() == MAPPING_SECTION
                    continue
                if not in_mapping:
                    continue
                if self._load_row(line, number):
                    loaded += 1

        # Rows read from disk are not a change to save
        self._changed = False
        logger.debug("Loaded %d user mappings from %s", loaded, self.path)
        return loaded

    def _load_row(self, line: str, number: int) -> bool:
        git_part, sep, tfs_part = line.partition("=")
        if not sep:
            logger.error(
                "User map file error at line %d: '=' not found, line ignored: %s",
                number,
                line,
            )
            return False
        tfs_user = tfs_part.strip()
        if not git_part.strip() or not tfs_user:
            logger.error(
                "User map file error at line %d: user information missing, "
                "line ignored: %s",
                number,
                line,
            )
            return False
        try:
            author = parse_local_author(git_part)
        except ValueError as exc:
            logger.error(
                "User map file error at line %d: %s, line ignored", number, exc
            )
            return False
        ok, reason = validate_tfs_user(tfs_user)
        if not ok:
            logger.error(
                "User map file error at line %d: %s, line ignored",
                number,
                reason,
            )
            return False
        self.map(author, RemoteIdentity(unique_name=tfs_user))
        return True

    def render(self) -> str:
        """Return the user map file content."""
        lines: list[str] = wrap_comment(FILE_HEADER)

        lines += ["", *wrap_comment(MAPPING_HEADER), "", MAPPING_SECTION]
        for key, candidates in self._mapping.items():
            if len(candidates) == 1:
                lines.append(
                    f"{INDENT}{self._authors[key]} = {candidates[0].unique_name}"
                )

        unknown = self.unknown_authors()
        if unknown:
            lines += ["", *wrap_comment(UNKNOWN_HEADER), "", UNKNOWN_SECTION]
            lines += [f"{INDENT}{author} = " for author in unknown]

        duplicates = self.ambiguous_authors()
        if duplicates:
            lines += [
                "",
                *wrap_comment(DUPLICATES_HEADER),
                "",
                DUPLICATES_SECTION,
            ]
            for author, candidates in duplicates.items():
                lines += [
                    f"{INDENT}{author} = {c.unique_name}" for c in candidates
                ]

        return "\n".join(lines) + "\n"

    def save(self) -> None:
        """Write the user map file, keeping the previous one as ``.bak``."""
        if self.path is None:
            raise ValueError("No user map file configured")
        if self.path.exists():
            shutil.copy2(self.path, self.path.with_name(self.path.name + ".bak"))
        write_atomic(self.path, self.render())
        self._changed = False
        logger.info("Saved user map to %s", self.path)
