import os
import sys

import pytest

TEST_DIR = os.path.abspath(os.path.dirname(__file__))
PROJ_DIR = os.path.dirname(TEST_DIR)
sys.path.insert(0, os.path.join(PROJ_DIR, 'git-updatehook'))

import git_updatehook


def sha(n):
    return '%040x' % (n,)


class FakeRepository(object):
    """Stands in for GitRepository, backed by in-memory commits and tags."""

    def __init__(self):
        self.types = {}
        self.parents = {}
        self.commits = {}
        self.order = []
        self.tags = {}
        self.previous_tags = {}
        self.shortlog_calls = []
        self.type_queries = []

    def add_commit(self, sha1, subject, parents=()):
        self.types[sha1] = 'commit'
        self.parents[sha1] = list(parents)
        self.order.append(sha1)
        self.commits[sha1] = git_updatehook.CommitInfo(
            sha1=sha1,
            author='A U Thor <author@example.com>',
            author_date='Thu, 7 Apr 2005 22:13:13 +0200',
            committer='C O Mitter <committer@example.com>',
            committer_date='Thu, 7 Apr 2005 22:13:13 +0200',
            subject=subject,
            )

    def add_tag(self, sha1, name, target, message='Release.\n', previous=None):
        self.types[sha1] = 'tag'
        self.tags[sha1] = git_updatehook.TagObject(
            object=target,
            type='commit',
            tag=name,
            tagger='T A Gger <tagger@example.com>',
            tagger_date='Thu, 07 Apr 2005 22:13:13 +0200',
            message=message,
            )
        if previous:
            self.previous_tags[sha1] = previous

    def ancestors(self, rev):
        seen = set()
        todo = [rev]
        while todo:
            sha1 = todo.pop()
            if sha1 not in seen:
                seen.add(sha1)
                todo.extend(self.parents.get(sha1, []))
        return seen

    def verify_revision(self, rev):
        if git_updatehook.is_null(rev):
            return rev
        if rev not in self.types:
            raise git_updatehook.UsageError('invalid revision %r' % (rev,))
        return rev

    def get_object_type(self, rev):
        self.type_queries.append(rev)
        return self.types[rev]

    def get_merge_base(self, rev1, rev2):
        common = self.ancestors(rev1) & self.ancestors(rev2)
        for sha1 in reversed(self.order):
            if sha1 in common:
                return sha1
        return None

    def list_commits(self, newrev, exclude=None):
        wanted = self.ancestors(newrev)
        if exclude:
            wanted -= self.ancestors(exclude)
        return [sha1 for sha1 in self.order if sha1 in wanted]

    def read_commit(self, sha1):
        return self.commits[sha1]

    def read_log_oneline(self, rev):
        if rev in self.tags:
            rev = self.tags[rev].object
        return '%s %s' % (rev[:10], self.commits[rev].subject)

    def generate_patch(self, sha1):
        return [
            '%s\n' % (self.commits[sha1].subject,),
            '\n',
            ' file.txt | 1 +\n',
            '\n',
            'diff --git a/file.txt b/file.txt\n',
            ]

    def read_tag(self, sha1):
        return self.tags[sha1]

    def find_previous_tag(self, rev):
        return self.previous_tags.get(rev)

    def generate_shortlog(self, newrev, since=None):
        self.shortlog_calls.append((newrev, since))
        return ['A U Thor (1):\n', '      Initial commit\n', '\n']


class RecordingMailer(git_updatehook.Mailer):
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, message):
        if message.recipient in self.fail_for:
            raise git_updatehook.DeliveryError('mailer exploded')
        self.sent.append(message)


def make_config(**kw):
    values = dict(
        frozen_branches=None,
        protected_branches=None,
        protect_tag_deletion=False,
        mail_branches=None,
        recipients=('list@example.com',),
        projectdesc='Test project',
        omit_module_prefix=False,
        )
    values.update(kw)
    return git_updatehook.PolicyConfig(**values)


@pytest.fixture
def repo():
    """A linear history A -> B -> C."""

    repository = FakeRepository()
    repository.add_commit(sha(1), 'Initial commit')
    repository.add_commit(sha(2), 'Add feature', parents=[sha(1)])
    repository.add_commit(sha(3), 'Fix feature', parents=[sha(2)])
    return repository


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def environment():
    return git_updatehook.Environment(make_config(), module='project', pusher='pusher')
