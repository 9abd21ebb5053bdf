"""
Check the working tree has no uncommitted changes after a build
"""

from typing import Iterable, Optional, Tuple
import subprocess

# In tests, actions are copied into these directories to try out changes
DEFAULT_EXCLUDES = ('.github', 'github-actions')

def _pathspecs(excludes):
    return ['--'] + [':!' + path for path in excludes]

def find_changes(excludes: Iterable[str]=DEFAULT_EXCLUDES, cwd: Optional[str]=None) -> Tuple[str, str]:
    """
    :param excludes: Paths to ignore.

    :param cwd: Directory inside the git working tree. Defaults to the current directory.

    :returns: ``git diff --name-status`` output for tracked files and the list of untracked (not ignored) files.
    """
    excludes = list(excludes)
    changed = subprocess.check_output(['git', 'diff', '--name-status'] + _pathspecs(excludes), cwd=cwd)
    untracked = subprocess.check_output(['git', 'ls-files', '--other', '--exclude-standard'] + _pathspecs(excludes), cwd=cwd)
    return changed.decode('utf-8').strip(), untracked.decode('utf-8').strip()

def check_uncommitted(excludes: Iterable[str]=DEFAULT_EXCLUDES, cwd: Optional[str]=None) -> bool:
    """
    Report uncommitted changes.

    :returns: ``True`` if the working tree is clean.
    """
    changed, untracked = find_changes(excludes, cwd)
    if not changed and not untracked:
        return True
    if changed:
        print('ERROR: Uncommitted changes in tracked files:')
        print(changed)
    if untracked:
        print('ERROR: Untracked files:')
        print(untracked)
    print('Please, make sure you run all steps that are needed to propagate all changes '
          'to generated files and then commit the changes before push.')
    return False
