#! /usr/bin/env python3

# Copyright (c) 2012,2013 Michael Haggerty
# Derived from git-multimail and contrib/hooks/post-receive-email, which is
# Copyright (c) 2007 Andy Parkins
# and also includes contributions by other authors.
#
# This file is part of git-updatehook.
#
# git-updatehook is free software: you can redistribute it and/or
# modify it under the terms of the GNU General Public License version
# 2 as published by the Free Software Foundation.
#
# This program is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see
# <http://www.gnu.org/licenses/>.

"""Enforce branch policy and send notification emails for a git push.

This script is designed to be used as an "update" hook in a git
repository (see githooks(5)).  It is invoked once per updated
reference as

    update REFNAME OLDREV NEWREV

First the update is checked against the repository's policy, which is
read from marker files in the git directory:

    frozen-branches        branches that may not be pushed to at all
    protected-branches     branches that may not be deleted
    protect-tag-deletion   if present, tags may not be deleted
    mail-branches          if present, only these branches are mailed
    mailinglist            the addresses to which emails are sent
    no-module-prefix       if present, omit "[module]" from subjects

A policy violation makes the hook fail, which rejects the update.
Otherwise the hook emails each recipient a description of the change:
one email per new commit for branch updates, or a single email for
tag changes and deletions.  Emails are handed to an external mailer
program; a failure to send never rejects the update.

To help with debugging, this script accepts a --stdout option, which
causes the emails to be written to standard output rather than sent
using the mailer.

"""

import sys
import os
import re
import time
import shlex
import datetime
import subprocess
import email.utils
import optparse
from collections import namedtuple
from email.header import Header
from email.utils import getaddresses
from email.utils import formataddr


__version__ = '1.0.0'

DEBUG = False

ENCODING = 'utf-8'
CHARSET = 'utf-8'

ZEROS = '0' * 40
LOGBEGIN = '- Log -----------------------------------------------------------------\n'
LOGEND = '-----------------------------------------------------------------------\n'

# Seconds to wait between two consecutive emails:
DEFAULT_DELAY = 2

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'

# Object types.  DELETE doubles as the object type of a deleted
# reference, whose new value cannot be inspected.
COMMIT = 'commit'
TAG = 'tag'

# Reference kinds, as they appear in the X-Git-Reftype header:
BRANCH = 'branch'
TRACKING_BRANCH = 'tracking branch'
NON_ANNOTATED_TAG = 'tag'
ANNOTATED_TAG = 'annotated tag'
OTHER_REFERENCE = 'reference'

BRANCH_KINDS = (BRANCH, TRACKING_BRANCH)
TAG_KINDS = (NON_ANNOTATED_TAG, ANNOTATED_TAG)

# Marker files in the git directory:
FROZEN_BRANCHES_FILE = 'frozen-branches'
PROTECTED_BRANCHES_FILE = 'protected-branches'
PROTECT_TAG_DELETION_FILE = 'protect-tag-deletion'
MAIL_BRANCHES_FILE = 'mail-branches'
RECIPIENTS_FILE = 'mailinglist'
NO_MODULE_PREFIX_FILE = 'no-module-prefix'
DESCRIPTION_FILE = 'description'

UNNAMED_PROJECT = 'UNNAMED PROJECT'


HEADER_TEMPLATES = [
    ('Content-Type', 'text/plain; charset=utf-8'),
    ('Date', '%(date)s'),
    ('Message-ID', '%(msgid)s'),
    ('From', '%(sender)s'),
    ('X-Git-Project', '%(projectdesc)s'),
    ('X-Git-Module', '%(module)s'),
    ('X-Git-Refname', '%(refname)s'),
    ('X-Git-Reftype', '%(refname_type)s'),
    ('X-Git-Oldrev', '%(oldrev)s'),
    ('X-Git-Newrev', '%(newrev)s'),
    ('Auto-Submitted', 'auto-generated'),
    ]


INTRO_TEMPLATE = """\
This is an automated email from the git hooks/update script.

%(pusher)s pushed a change to %(refname_type)s %(display_refname)s
in repository %(module)s.

"""


FOOTER_TEMPLATE = """\

-- \n\
To stop receiving notification emails like this one, please contact
%(administrator)s.
"""


REFERENCE_SUBJECT_TEMPLATE = '%(emailprefix)s%(display_refname)s: %(refname_type)s %(change_type)sd'


DELETED_TEMPLATE = """\
*** WARNING: %(refname_type)s %(display_refname)s was deleted! ***

       was  %(oldrev_oneline)s

"""


TAG_CREATED_TEMPLATE = """\
        at  %(newrev_oneline)s
"""


TAG_UPDATED_TEMPLATE = """\
*** WARNING: tag %(display_refname)s was modified! ***

      from  %(oldrev_oneline)s
        to  %(newrev_oneline)s
"""


ANNOTATED_TAG_CREATED_TEMPLATE = """\
        at  %(newrev_short)s (tag)
"""


ANNOTATED_TAG_UPDATED_TEMPLATE = """\
*** WARNING: tag %(display_refname)s was modified! ***

      from  %(oldrev_short)s
        to  %(newrev_short)s (tag)
"""


REVISION_SUBJECT_TEMPLATE = '%(emailprefix)s%(display_refname)s %(num)02d/%(tot)02d: %(oneline)s'


REVISION_INTRO_TEMPLATE = """\
This is an automated email from the git hooks/update script.

%(pusher)s pushed a commit to %(refname_type)s %(display_refname)s
in repository %(module)s.

commit %(rev)s
Author:     %(author)s
AuthorDate: %(author_date)s
Commit:     %(committer)s
CommitDate: %(committer_date)s

"""


REVISION_FOOTER_TEMPLATE = FOOTER_TEMPLATE


class CommandError(Exception):
    def __init__(self, cmd, retcode):
        self.cmd = cmd
        self.retcode = retcode
        Exception.__init__(
            self,
            'Command "%s" failed with retcode %s' % (' '.join(cmd), retcode,)
            )


class ConfigurationException(Exception):
    pass


class UsageError(Exception):
    """The hook was invoked without a reference update to check."""


class PolicyError(Exception):
    """The update violates the repository's policy and must be rejected."""


class FrozenBranchError(PolicyError):
    pass


class ProtectedDeletionError(PolicyError):
    pass


class TagParseError(Exception):
    pass


class DeliveryError(Exception):
    pass


def read_output(cmd, input=None, keepends=False, **kw):
    if input:
        stdin = subprocess.PIPE
        input = input.encode(ENCODING)
    else:
        stdin = None
    p = subprocess.Popen(
        cmd, stdin=stdin, stdout=subprocess.PIPE, stderr=subprocess.PIPE, **kw
        )
    (out, err) = p.communicate(input)
    retcode = p.wait()
    if retcode:
        raise CommandError(cmd, retcode)
    out = out.decode(ENCODING, 'replace')
    if not keepends:
        out = out.rstrip('\n\r')
    return out


def read_lines(cmd, keepends=False, **kw):
    """Return the lines output by command.

    Return as single lines, with newlines stripped off."""

    return read_output(cmd, keepends=True, **kw).splitlines(keepends)


def header_encode(text, header_name=None):
    """Encode and line-wrap the value of an email header field."""

    try:
        return Header(text, header_name=header_name).encode()
    except UnicodeEncodeError:
        return Header(text, header_name=header_name, charset=CHARSET,
                      errors='replace').encode()


def is_null(rev):
    """Return True iff rev is the all-zeros object name."""

    return bool(rev) and not rev.strip('0')


def short_name(rev):
    return rev[:10]


class Config(object):
    """Read the "updatehook" section of the git configuration."""

    def __init__(self, section, git_dir=None):
        self.section = section
        if git_dir is None:
            self._env = None
        else:
            self._env = dict(os.environ, GIT_DIR=git_dir)

    @staticmethod
    def _split(s):
        """Split NUL-terminated values."""

        words = s.split('\0')
        assert words[-1] == ''
        return words[:-1]

    def get(self, name, default=None):
        try:
            values = self._split(read_output(
                    ['git', 'config', '--get', '--null', '%s.%s' % (self.section, name)],
                    keepends=True, env=self._env,
                    ))
            assert len(values) == 1
            return values[0]
        except CommandError:
            return default

    def get_all(self, name, default=None):
        """Read a (possibly multivalued) setting from the configuration.

        Return the result as a list of values, or default if the name
        is unset."""

        try:
            return self._split(read_output(
                ['git', 'config', '--get-all', '--null', '%s.%s' % (self.section, name)],
                keepends=True, env=self._env,
                ))
        except CommandError as e:
            if e.retcode == 1:
                return default
            else:
                raise

    def get_recipients(self, name, default=None):
        """Read a recipients list from the configuration.

        Return the result as a comma-separated list of email
        addresses, or default if the option is unset.  If the setting
        has multiple values, concatenate them with comma separators."""

        lines = self.get_all(name, default=None)
        if lines is None:
            return default
        return ', '.join(line.strip() for line in lines)


class PushEvent(namedtuple('PushEvent', ['refname', 'oldrev', 'newrev'])):
    """The update of a single reference."""

    __slots__ = ()


class Classification(namedtuple('Classification', [
        'change_type', 'object_type', 'reference_kind',
        'short_refname', 'display_refname',
        ])):
    __slots__ = ()


class PolicyConfig(namedtuple('PolicyConfig', [
        'frozen_branches', 'protected_branches', 'protect_tag_deletion',
        'mail_branches', 'recipients', 'projectdesc', 'omit_module_prefix',
        ])):
    """The repository's policy, as read by load_policy_config().

    frozen_branches, protected_branches and mail_branches are
    frozensets, or None if the corresponding marker file does not
    exist (in which case the feature is turned off)."""

    __slots__ = ()

    @property
    def mail_only_listed_branches(self):
        return self.mail_branches is not None


class CommitInfo(namedtuple('CommitInfo', [
        'sha1', 'author', 'author_date', 'committer', 'committer_date', 'subject',
        ])):
    __slots__ = ()


class TagObject(namedtuple('TagObject', [
        'object', 'type', 'tag', 'tagger', 'tagger_date', 'message',
        ])):
    __slots__ = ()


class NotificationMessage(namedtuple('NotificationMessage', [
        'recipient', 'subject', 'headers', 'body',
        ])):
    """One email, ready to be handed to a Mailer.

    headers is a list of (name, value) pairs, already encoded; body is
    a list of lines, each including its trailing newline."""

    __slots__ = ()

    def get_header(self, name, default=None):
        for (key, value) in self.headers:
            if key.lower() == name.lower():
                return value
        return default

    def generate_lines(self):
        for (name, value) in self.headers:
            yield '%s: %s\n' % (name, value)
        yield '\n'
        for line in self.body:
            yield line

    def as_string(self):
        return ''.join(self.generate_lines())


def validate_arguments(args):
    """Return (refname, oldrev, newrev) from the hook's arguments.

    Raise UsageError unless there are exactly three non-empty
    arguments."""

    if len(args) != 3:
        raise UsageError('expected 3 arguments (REFNAME OLDREV NEWREV), got %d' % (len(args),))
    for (name, value) in zip(['refname', 'oldrev', 'newrev'], args):
        if not value or not value.strip():
            raise UsageError('%s must not be empty' % (name,))
    return tuple(args)


def find_git_dir():
    """Return the absolute path of the git directory.

    Use the GIT_DIR environment variable if it is set (as it is when
    git runs a hook), otherwise ask git."""

    try:
        git_dir = read_output(['git', 'rev-parse', '--git-dir'])
    except (CommandError, OSError):
        raise UsageError('not in a git repository')
    return os.path.abspath(git_dir)


def read_word_list(path):
    """Read the words listed in the file at path.

    Words are separated by whitespace or commas; '#' starts a comment.
    Return None if the file does not exist."""

    try:
        f = open(path)
    except IOError:
        return None
    words = []
    with f:
        for line in f:
            line = line.split('#', 1)[0]
            words.extend(word for word in re.split(r'[\s,]+', line) if word)
    return words


def read_projectdesc(git_dir):
    try:
        with open(os.path.join(git_dir, DESCRIPTION_FILE)) as f:
            projectdesc = f.readline().strip()
    except IOError:
        return UNNAMED_PROJECT
    if not projectdesc or projectdesc.startswith('Unnamed repository'):
        return UNNAMED_PROJECT
    return projectdesc


def parse_recipients(value):
    """Turn a comma-separated list of RFC 2822 addresses into a tuple."""

    return tuple(
        formataddr(pair)
        for pair in getaddresses([value])
        if pair[1]
        )


def load_policy_config(git_dir, recipients=None):
    """Read the repository's policy from the marker files in git_dir.

    recipients (a comma-separated string, or None) is used when the
    mailinglist file is missing or empty."""

    def path(name):
        return os.path.join(git_dir, name)

    def word_set(name):
        words = read_word_list(path(name))
        if words is None:
            return None
        return frozenset(words)

    listed = read_word_list(path(RECIPIENTS_FILE))
    if listed:
        recipient_list = tuple(listed)
    elif recipients:
        recipient_list = parse_recipients(recipients)
    else:
        recipient_list = ()

    return PolicyConfig(
        frozen_branches=word_set(FROZEN_BRANCHES_FILE),
        protected_branches=word_set(PROTECTED_BRANCHES_FILE),
        protect_tag_deletion=os.path.exists(path(PROTECT_TAG_DELETION_FILE)),
        mail_branches=word_set(MAIL_BRANCHES_FILE),
        recipients=recipient_list,
        projectdesc=read_projectdesc(git_dir),
        omit_module_prefix=os.path.exists(path(NO_MODULE_PREFIX_FILE)),
        )


TAG_HEADER_RE = re.compile(r'^(?P<key>[a-z][a-z0-9-]*) (?P<value>.*)$')
TAGGER_RE = re.compile(r'^(?P<identity>.+?) (?P<timestamp>\d+) (?P<tz>[+-]\d{4})$')


def format_timestamp(timestamp, tz):
    """Format a git timestamp and timezone offset (e.g. '+0100') as an RFC 2822 date."""

    minutes = int(tz[1:3]) * 60 + int(tz[3:5])
    if tz[0] == '-':
        minutes = -minutes
    tzinfo = datetime.timezone(datetime.timedelta(minutes=minutes))
    return email.utils.format_datetime(datetime.datetime.fromtimestamp(timestamp, tzinfo))


def parse_tag_object(text):
    """Parse the raw contents of a tag object (as output by 'git cat-file tag').

    Return a TagObject.  Raise TagParseError if one of the object,
    type, or tag fields is missing or if a header line is malformed."""

    lines = text.splitlines(True)
    fields = {}
    message_lines = []
    for (i, line) in enumerate(lines):
        if line in ('\n', '\r\n'):
            message_lines = lines[i + 1:]
            break
        if line.startswith(' '):
            # Continuation of a multi-line header (e.g., a signature).
            continue
        m = TAG_HEADER_RE.match(line.rstrip('\r\n'))
        if not m:
            raise TagParseError('malformed tag header line: %r' % (line,))
        fields.setdefault(m.group('key'), m.group('value'))

    for key in ['object', 'type', 'tag']:
        if key not in fields:
            raise TagParseError('tag object lacks a %r field' % (key,))

    tagger = tagger_date = None
    if 'tagger' in fields:
        m = TAGGER_RE.match(fields['tagger'])
        if not m:
            raise TagParseError('malformed tagger line: %r' % (fields['tagger'],))
        tagger = m.group('identity')
        tagger_date = format_timestamp(int(m.group('timestamp')), m.group('tz'))

    return TagObject(
        object=fields['object'],
        type=fields['type'],
        tag=fields['tag'],
        tagger=tagger,
        tagger_date=tagger_date,
        message=''.join(message_lines),
        )


class GitRepository(object):
    """Read-only access to the git repository being pushed to.

    All of the hook's git queries go through this class, so that tests
    can substitute an object with the same methods."""

    REPO_NAME_RE = re.compile(r'^(?P<name>.+?)(?:\.git)?$')

    COMMIT_FORMAT = '%H%n%an <%ae>%n%aD%n%cn <%ce>%n%cD%n%s'

    def __init__(self, git_dir):
        self.git_dir = git_dir
        self._env = dict(os.environ, GIT_DIR=git_dir)

    def read_output(self, args, **kw):
        return read_output(['git'] + args, env=self._env, **kw)

    def read_lines(self, args, keepends=False, **kw):
        return read_lines(['git'] + args, keepends=keepends, env=self._env, **kw)

    def verify_revision(self, rev):
        """Return the full object name of rev, leaving the null revision alone.

        Raise UsageError unless rev names an object in the repository."""

        if is_null(rev):
            return rev
        try:
            return self.read_output(['rev-parse', '--verify', '%s^{object}' % (rev,)])
        except CommandError:
            raise UsageError('invalid revision %r' % (rev,))

    def get_object_type(self, rev):
        return self.read_output(['cat-file', '-t', rev])

    def get_merge_base(self, rev1, rev2):
        """Return the merge base of rev1 and rev2, or None if they are unrelated."""

        try:
            return self.read_output(['merge-base', rev1, rev2]) or None
        except CommandError:
            return None

    def list_commits(self, newrev, exclude=None):
        """Return the commits reachable from newrev but not from exclude, oldest first."""

        args = ['rev-list', '--reverse', '--topo-order', newrev]
        if exclude:
            args.append('^%s' % (exclude,))
        return self.read_lines(args)

    def read_commit(self, sha1):
        out = self.read_output(
            ['log', '--max-count=1', '--format=%s' % (self.COMMIT_FORMAT,), sha1, '--'],
            keepends=True,
            )
        fields = out.split('\n')
        return CommitInfo(*fields[:6])

    def read_log_oneline(self, rev):
        """Return the one-line summary of rev."""

        return self.read_output(
            ['log', '--abbrev=10', '--format=%h %s', '--max-count=1', rev, '--']
            )

    def generate_patch(self, sha1):
        """Return the message, diffstat and patch of a commit, a line at a time."""

        return self.read_lines(
            [
                'show', '--format=%B', '--find-renames', '--find-copies',
                '--stat', '--patch', '--cc', sha1,
                ],
            keepends=True,
            )

    def read_tag(self, sha1):
        return parse_tag_object(self.read_output(['cat-file', 'tag', sha1], keepends=True))

    def find_previous_tag(self, rev):
        """Return the name of the nearest tag before rev, or None."""

        try:
            return self.read_output(['describe', '--abbrev=0', '%s^' % (rev,)]) or None
        except CommandError:
            return None

    def generate_shortlog(self, newrev, since=None):
        if since:
            spec = '%s..%s' % (since, newrev,)
        else:
            spec = newrev
        revlist = self.read_output(['rev-list', '--pretty=short', spec], keepends=True)
        return self.read_lines(['shortlog'], input=revlist, keepends=True)

    def get_repo_shortname(self):
        """Return the repository's directory name, without a '.git' suffix."""

        if self.read_output(['rev-parse', '--is-bare-repository']) == 'true':
            path = self.git_dir
        else:
            try:
                path = self.read_output(['rev-parse', '--show-toplevel'])
            except CommandError:
                return 'unknown repository'

        basename = os.path.basename(os.path.abspath(path))
        m = self.REPO_NAME_RE.match(basename)
        if m:
            return m.group('name')
        else:
            return 'unknown repository'


def get_change_type(oldrev, newrev):
    if is_null(oldrev) and not is_null(newrev):
        return CREATE
    elif is_null(newrev) and not is_null(oldrev):
        return DELETE
    else:
        return UPDATE


REF_RE = re.compile(r'^refs\/(?P<area>[^\/]+)\/(?P<shortname>.*)$')

KNOWN_AREAS = ('heads', 'tags', 'remotes')

REFERENCE_KINDS = {
    ('heads', COMMIT): BRANCH,
    ('heads', DELETE): BRANCH,
    ('remotes', COMMIT): TRACKING_BRANCH,
    ('remotes', DELETE): TRACKING_BRANCH,
    ('tags', COMMIT): NON_ANNOTATED_TAG,
    ('tags', DELETE): NON_ANNOTATED_TAG,
    ('tags', TAG): ANNOTATED_TAG,
    }


def get_reference_kind(refname, object_type):
    m = REF_RE.match(refname)
    if m:
        area = m.group('area')
    else:
        area = ''
    return REFERENCE_KINDS.get((area, object_type), OTHER_REFERENCE)


def classify(repository, oldrev, newrev, refname):
    """Classify the update of refname from oldrev to newrev.

    Return a Classification.  The only git query made is the type of
    newrev; a null newrev gets the object type DELETE."""

    change_type = get_change_type(oldrev, newrev)
    if is_null(newrev):
        object_type = DELETE
    else:
        object_type = repository.get_object_type(newrev)
    reference_kind = get_reference_kind(refname, object_type)

    m = REF_RE.match(refname)
    if m and m.group('area') in KNOWN_AREAS:
        display_refname = m.group('shortname')
    else:
        # Keep the full name, otherwise the reference would not be
        # obvious from the text of the email.
        display_refname = refname

    return Classification(
        change_type=change_type,
        object_type=object_type,
        reference_kind=reference_kind,
        short_refname=refname.rsplit('/', 1)[-1],
        display_refname=display_refname,
        )


def check_policy(classification, config):
    """Raise a PolicyError if the update must be rejected.

    The frozen-branch check comes first, then the deletion checks."""

    short_refname = classification.short_refname

    if config.frozen_branches is not None and short_refname in config.frozen_branches:
        raise FrozenBranchError(
            'branch %s is frozen; pushes to it are not allowed' % (short_refname,)
            )

    if classification.change_type != DELETE:
        return

    if classification.reference_kind in TAG_KINDS and config.protect_tag_deletion:
        raise ProtectedDeletionError(
            'deleting tag %s is not allowed' % (classification.display_refname,)
            )

    if (
            classification.reference_kind in BRANCH_KINDS
            and config.protected_branches is not None
            and short_refname in config.protected_branches
            ):
        raise ProtectedDeletionError(
            'branch %s is protected and may not be deleted' % (short_refname,)
            )


def is_mail_wanted(classification, config):
    """Return False iff mail is restricted to listed branches and this one is not listed."""

    if not config.mail_only_listed_branches:
        return True
    if classification.reference_kind not in BRANCH_KINDS:
        return True
    return classification.short_refname in config.mail_branches


def limit_lines(lines, max_lines):
    index = -1
    for (index, line) in enumerate(lines):
        if index < max_lines:
            yield line

    if index >= max_lines:
        yield '... %d lines suppressed ...\n' % (index + 1 - max_lines,)


def limit_linelength(lines, max_linelength):
    for line in lines:
        # Don't forget that lines always include a trailing newline.
        if len(line) > max_linelength + 1:
            line = line[:max_linelength - 7] + ' [...]\n'
        yield line


class Environment(object):
    """Describes the environment in which the push is occurring.

    An Environment holds the values that do not depend on the
    particular change being described:

        config

            The PolicyConfig of the repository.

        module

            The short name of the repository (its directory name
            without a '.git' suffix).

        projectdesc

            A one-line description of the project.

        emailprefix

            A string prefixed to every email's subject: '[module] ',
            or the empty string if the repository asks for no prefix.

        pusher

            The username of the person who pushed the changes.

        sender (may be None)

            The 'From' email address.  If None, no From header is
            output and the mailer supplies one.

        administrator

            The name and/or email of the repository administrator,
            named in the footer of every email.

        maxlines, maxlinelength (int or None)

            Limits applied to email bodies by filter_body().

    """

    VALUE_KEYS = [
        'module',
        'projectdesc',
        'administrator',
        'emailprefix',
        'pusher',
        'sender',
        ]

    def __init__(self, config, module, pusher=None, sender=None, administrator=None,
                 maxlines=None, maxlinelength=500):
        self.config = config
        self.module = module
        self.projectdesc = config.projectdesc
        if config.omit_module_prefix:
            self.emailprefix = ''
        else:
            self.emailprefix = '[%s] ' % (module,)
        self.pusher = pusher or os.environ.get('USER', 'unknown user')
        self.sender = sender or None
        self.administrator = administrator or 'the administrator of this repository'
        self.maxlines = maxlines
        self.maxlinelength = maxlinelength

        self._values = None

    def get_values(self):
        """Return a dictionary {keyword : expansion} for this Environment.

        The return value is always a new dictionary."""

        if self._values is None:
            values = {}
            for key in self.VALUE_KEYS:
                value = getattr(self, key, None)
                if value is not None:
                    values[key] = value
            self._values = values

        return self._values.copy()

    def filter_body(self, lines):
        """Limit the length of the body's lines and the number of lines."""

        if self.maxlinelength:
            lines = limit_linelength(lines, self.maxlinelength)

        if self.maxlines:
            lines = limit_lines(lines, self.maxlines)

        return lines


class Change(object):
    """The change to describe in one notification email.

    A Change knows how to generate a NotificationMessage describing
    itself to one recipient.  Derived classes supply the subject and
    the body of the email."""

    SUBJECT_TEMPLATE = REFERENCE_SUBJECT_TEMPLATE
    INTRO_TEMPLATE = INTRO_TEMPLATE
    FOOTER_TEMPLATE = FOOTER_TEMPLATE

    def __init__(self, repository, environment, event, classification, recipient):
        self.repository = repository
        self.environment = environment
        self.event = event
        self.classification = classification
        self.recipient = recipient
        self.msgid = email.utils.make_msgid()
        self._values = None

    @classmethod
    def compose(cls, repository, environment, event, classification, recipient):
        """Return the list of NotificationMessages for this kind of change."""

        change = cls(repository, environment, event, classification, recipient)
        return [change.generate_message()]

    def _compute_values(self):
        """Return a dictionary {keyword : expansion} for this Change.

        Derived classes overload this method to add more entries to
        the return value.  The return value should always be a new
        dictionary."""

        values = self.environment.get_values()
        values['recipient'] = self.recipient
        values['msgid'] = self.msgid
        values['date'] = email.utils.formatdate(localtime=True)
        values['refname'] = self.event.refname
        values['oldrev'] = self.event.oldrev
        values['newrev'] = self.event.newrev
        values['oldrev_short'] = short_name(self.event.oldrev)
        values['newrev_short'] = short_name(self.event.newrev)
        values['change_type'] = self.classification.change_type
        values['refname_type'] = self.classification.reference_kind
        values['short_refname'] = self.classification.short_refname
        values['display_refname'] = self.classification.display_refname
        return values

    def get_values(self, **extra_values):
        if self._values is None:
            self._values = self._compute_values()

        values = self._values.copy()
        if extra_values:
            values.update(extra_values)
        return values

    def expand(self, template, **extra_values):
        return template % self.get_values(**extra_values)

    def expand_lines(self, template, **extra_values):
        """Break template into lines and expand each line.

        Silently skip lines that contain references to unknown
        variables."""

        values = self.get_values(**extra_values)
        for line in template.splitlines(True):
            try:
                yield line % values
            except KeyError as e:
                if DEBUG:
                    sys.stderr.write(
                        'Warning: unknown variable %r in the following line; line skipped:\n'
                        '    %s'
                        % (e.args[0], line,)
                        )

    def header_templates(self):
        return HEADER_TEMPLATES

    def generate_email_headers(self, subject):
        headers = [
            ('To', header_encode(self.recipient, 'To')),
            ('Subject', header_encode(subject, 'Subject')),
            ]
        for (name, template) in self.header_templates():
            try:
                value = self.expand(template)
            except KeyError:
                # The value is unset (e.g. no sender); omit the header.
                continue
            headers.append((name, header_encode(value, name)))
        return headers

    def generate_email_body(self):
        """Generate the main part of the email body, a line at a time."""

        raise NotImplementedError()

    def generate_message(self):
        subject = self.expand(self.SUBJECT_TEMPLATE)
        body = list(self.expand_lines(self.INTRO_TEMPLATE))
        body.extend(self.environment.filter_body(self.generate_email_body()))
        body.extend(self.expand_lines(self.FOOTER_TEMPLATE))
        return NotificationMessage(
            recipient=self.recipient,
            subject=subject,
            headers=self.generate_email_headers(subject),
            body=body,
            )


class Revision(Change):
    """A single commit added to a branch by the update."""

    SUBJECT_TEMPLATE = REVISION_SUBJECT_TEMPLATE
    INTRO_TEMPLATE = REVISION_INTRO_TEMPLATE
    FOOTER_TEMPLATE = REVISION_FOOTER_TEMPLATE

    def __init__(self, repository, environment, event, classification, recipient,
                 sha1, num, tot):
        Change.__init__(self, repository, environment, event, classification, recipient)
        self.sha1 = sha1
        self.num = num
        self.tot = tot

    @classmethod
    def compose(cls, repository, environment, event, classification, recipient):
        """Return one NotificationMessage per new commit, oldest first.

        For an update, the new commits are those since the merge base
        of the old and new values; a new branch brings all of its
        history."""

        if classification.change_type == CREATE:
            base = None
        else:
            base = repository.get_merge_base(event.oldrev, event.newrev)
        sha1s = repository.list_commits(event.newrev, exclude=base)
        tot = len(sha1s)
        return [
            cls(
                repository, environment, event, classification, recipient,
                sha1, num=i + 1, tot=tot,
                ).generate_message()
            for (i, sha1) in enumerate(sha1s)
            ]

    def _compute_values(self):
        values = Change._compute_values(self)
        commit = self.repository.read_commit(self.sha1)
        values['rev'] = self.sha1
        values['rev_short'] = short_name(self.sha1)
        values['num'] = self.num
        values['tot'] = self.tot
        values['oneline'] = commit.subject or self.sha1
        values['author'] = commit.author
        values['author_date'] = commit.author_date
        values['committer'] = commit.committer
        values['committer_date'] = commit.committer_date
        return values

    def header_templates(self):
        return HEADER_TEMPLATES + [('X-Git-Rev', '%(rev)s')]

    def generate_email_body(self):
        return self.repository.generate_patch(self.sha1)


class ReferenceDeletion(Change):
    """The deletion of any kind of reference."""

    def _compute_values(self):
        values = Change._compute_values(self)
        values['oldrev_oneline'] = self.repository.read_log_oneline(self.event.oldrev)
        return values

    def generate_email_body(self):
        return self.expand_lines(DELETED_TEMPLATE)


class NonAnnotatedTagChange(Change):
    """The creation or update of a tag that points directly at a commit."""

    def _compute_values(self):
        values = Change._compute_values(self)
        values['newrev_oneline'] = self.repository.read_log_oneline(self.event.newrev)
        if not is_null(self.event.oldrev):
            values['oldrev_oneline'] = self.repository.read_log_oneline(self.event.oldrev)
        return values

    def generate_email_body(self):
        if self.classification.change_type == CREATE:
            template = TAG_CREATED_TEMPLATE
        else:
            template = TAG_UPDATED_TEMPLATE
        for line in self.expand_lines(template):
            yield line
        yield '\n'


class AnnotatedTagChange(Change):
    """The creation or update of an annotated tag."""

    def describe_tag(self):
        """Describe the new value of an annotated tag."""

        tag = self.repository.read_tag(self.event.newrev)

        yield '   tagging  %s (%s)\n' % (tag.object, tag.type)
        if tag.type == COMMIT:
            # If the tagged object is a commit, then we assume this is a
            # release, and so we calculate which tag this tag is
            # replacing
            prevtag = self.repository.find_previous_tag(self.event.newrev)
            if prevtag:
                yield '  replaces  %s\n' % (prevtag,)
        else:
            prevtag = None

        if tag.tagger:
            yield ' tagged by  %s\n' % (tag.tagger,)
            yield '        on  %s\n' % (tag.tagger_date,)
        yield '\n'

        # Show the content of the tag message; this might contain a
        # change log or release notes so is worth displaying.
        yield LOGBEGIN
        contents = tag.message.splitlines(True)
        if contents and contents[-1][-1:] != '\n':
            contents.append('\n')
        for line in contents:
            yield line

        if tag.type == COMMIT:
            # Only commit tags make sense to have rev-list operations
            # performed on them.  Show the changes since the previous
            # release, or since time began if there is none.
            yield '\n'
            for line in self.repository.generate_shortlog(self.event.newrev, since=prevtag):
                yield line

        yield LOGEND
        yield '\n'

    def generate_email_body(self):
        if self.classification.change_type == CREATE:
            template = ANNOTATED_TAG_CREATED_TEMPLATE
        else:
            template = ANNOTATED_TAG_UPDATED_TEMPLATE
        for line in self.expand_lines(template):
            yield line

        for line in self.describe_tag():
            yield line


# A map {(reference kind, change type, object type) : Change class}
# selecting how an update is described.  None means that the update
# deliberately produces no email; updates that are missing from the
# map produce no email and a warning.
NOTIFICATION_RULES = {
    (BRANCH, CREATE, COMMIT): Revision,
    (BRANCH, UPDATE, COMMIT): Revision,
    (TRACKING_BRANCH, CREATE, COMMIT): Revision,
    # Tracking branches are updated automatically; mailing every
    # update would only be noise.
    (TRACKING_BRANCH, UPDATE, COMMIT): None,
    (NON_ANNOTATED_TAG, CREATE, COMMIT): NonAnnotatedTagChange,
    (NON_ANNOTATED_TAG, UPDATE, COMMIT): NonAnnotatedTagChange,
    (ANNOTATED_TAG, CREATE, TAG): AnnotatedTagChange,
    (ANNOTATED_TAG, UPDATE, TAG): AnnotatedTagChange,
    (BRANCH, DELETE, DELETE): ReferenceDeletion,
    (TRACKING_BRANCH, DELETE, DELETE): ReferenceDeletion,
    (NON_ANNOTATED_TAG, DELETE, DELETE): ReferenceDeletion,
    (ANNOTATED_TAG, DELETE, DELETE): ReferenceDeletion,
    }


def compose(repository, environment, event, classification, recipient):
    """Return the list of NotificationMessages describing event to recipient."""

    key = (
        classification.reference_kind,
        classification.change_type,
        classification.object_type,
        )
    if key not in NOTIFICATION_RULES:
        sys.stderr.write(
            '*** Unknown type of update to %r (%s %s, %s)\n'
            '***  - no email generated.\n'
            % (event.refname, key[0], key[1], key[2],)
            )
        return []

    klass = NOTIFICATION_RULES[key]
    if klass is None:
        return []
    return klass.compose(repository, environment, event, classification, recipient)


class Mailer(object):
    """An object that can send emails."""

    def send(self, message):
        """Send message, a NotificationMessage, to its recipient.

        Raise DeliveryError if the message could not be sent."""

        raise NotImplementedError()


class SendMailer(Mailer):
    """Send emails by running a mailer program.

    The program is run once per email, as 'command... RECIPIENT', with
    the email on its standard input."""

    def __init__(self, command):
        self.command = command[:]

    def send(self, message):
        cmd = self.command + [message.recipient]
        try:
            p = subprocess.Popen(cmd, stdin=subprocess.PIPE)
        except OSError as e:
            raise DeliveryError('cannot execute command: %s\n%s' % (' '.join(cmd), e,))
        try:
            p.communicate(message.as_string().encode(ENCODING))
        except OSError as e:
            p.kill()
            p.wait()
            raise DeliveryError('error while writing email to %s: %s' % (' '.join(cmd), e,))
        if p.returncode:
            raise DeliveryError(str(CommandError(cmd, p.returncode)))


class OutputMailer(Mailer):
    """Write emails to an output stream, bracketed by lines of '=' characters.

    This is intended for debugging purposes."""

    SEPARATOR = '=' * 75 + '\n'

    def __init__(self, f):
        self.f = f

    def send(self, message):
        try:
            self.f.write(self.SEPARATOR)
            self.f.writelines(message.generate_lines())
            self.f.write(self.SEPARATOR)
        except IOError as e:
            raise DeliveryError('error while writing email: %s' % (e,))


class ThrottledMailer(Mailer):
    """Pass emails on to another Mailer, pausing between consecutive emails."""

    def __init__(self, mailer, delay, sleep=time.sleep):
        self.mailer = mailer
        self.delay = delay
        self._sleep = sleep
        self._sent_any = False

    def send(self, message):
        if self._sent_any and self.delay:
            self._sleep(self.delay)
        self._sent_any = True
        self.mailer.send(message)


def deliver(mailer, messages):
    """Send messages one at a time; return the number sent successfully.

    Failures are reported on stderr and otherwise ignored."""

    sent = 0
    for message in messages:
        try:
            mailer.send(message)
        except DeliveryError as e:
            sys.stderr.write(
                '*** Failed to send email to %s: %s\n'
                '***  - continuing.\n'
                % (message.recipient, e,)
                )
        else:
            sent += 1
    return sent


def check_update(repository, environment, refname, oldrev, newrev):
    """Check the update against the policy.

    Raise a PolicyError if the update must be rejected.  Otherwise
    return (event, classification), or None if no email is wanted for
    the update."""

    event = PushEvent(
        refname,
        repository.verify_revision(oldrev),
        repository.verify_revision(newrev),
        )
    classification = classify(repository, event.oldrev, event.newrev, event.refname)
    config = environment.config

    check_policy(classification, config)

    if not is_mail_wanted(classification, config):
        sys.stderr.write(
            '*** %s %s is not in %s, so no email will be sent\n'
            % (classification.reference_kind, classification.short_refname, MAIL_BRANCHES_FILE,)
            )
        return None

    if not config.recipients:
        sys.stderr.write(
            '*** no recipients configured so no email will be sent\n'
            '*** for %r update %s->%s\n'
            % (event.refname, event.oldrev, event.newrev,)
            )
        return None

    return (event, classification)


def send_notifications(repository, environment, mailer, event, classification):
    """Compose and send the emails describing event to each recipient in turn.

    Return the number of emails sent."""

    sent = 0
    for recipient in environment.config.recipients:
        try:
            messages = compose(repository, environment, event, classification, recipient)
        except (CommandError, TagParseError) as e:
            sys.stderr.write(
                '*** Error while generating email for %s: %s\n'
                '***  - mail sending aborted.\n'
                % (recipient, e,)
                )
            continue
        if messages:
            sys.stderr.write('Sending notification emails to: %s\n' % (recipient,))
        sent += deliver(mailer, messages)
    return sent


def run_as_update_hook(repository, environment, mailer, refname, oldrev, newrev):
    """Check the update against the policy, then send its notification emails.

    Raise a PolicyError if the update must be rejected.  Return the
    number of emails sent."""

    update = check_update(repository, environment, refname, oldrev, newrev)
    if update is None:
        return 0
    (event, classification) = update
    return send_notifications(repository, environment, mailer, event, classification)


def get_mailer_command(options, config):
    command = (
        options.mailer
        or config.get('mailer')
        or os.environ.get('UPDATEHOOK_MAILER')
        )
    if not command:
        raise ConfigurationException(
            'No mailer program is configured.\n'
            'Please set "updatehook.mailer" or use the --mailer option.'
            )
    return shlex.split(command)


def get_int(config, name, default=None):
    value = config.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationException(
            'updatehook.%s must be an integer, not %r' % (name, value,)
            )


def get_delay(options, config):
    if options.delay is not None:
        return options.delay
    value = config.get('delay')
    if value is None:
        return DEFAULT_DELAY
    try:
        return float(value)
    except ValueError:
        raise ConfigurationException(
            'updatehook.delay must be a number of seconds, not %r' % (value,)
            )


def main(args):
    parser = optparse.OptionParser(
        description=__doc__,
        usage='%prog [OPTIONS] REFNAME OLDREV NEWREV',
        )

    parser.add_option(
        '--stdout', action='store_true', default=False,
        help='Output emails to stdout rather than sending them.',
        )
    parser.add_option(
        '--recipients', action='store', default=None,
        help=(
            'Set list of email recipients, used when the repository has no '
            '"mailinglist" file.'
            ),
        )
    parser.add_option(
        '--mailer', action='store', default=None,
        help=(
            'The command used to send each email; it is passed the recipient '
            'as its last argument.  Default is taken from updatehook.mailer.'
            ),
        )
    parser.add_option(
        '--delay', action='store', type='float', default=None,
        help='Seconds to wait between two emails (default %s).' % (DEFAULT_DELAY,),
        )

    (options, args) = parser.parse_args(args)

    try:
        (refname, oldrev, newrev) = validate_arguments(args)
        git_dir = find_git_dir()
    except UsageError as e:
        sys.stderr.write('fatal: update: %s\n' % (e,))
        parser.print_usage(sys.stderr)
        sys.exit(1)

    config = Config('updatehook', git_dir)
    repository = GitRepository(git_dir)

    try:
        recipients = (
            options.recipients
            or config.get_recipients('recipients')
            or os.environ.get('UPDATEHOOK_RECIPIENTS')
            )
        policy = load_policy_config(git_dir, recipients=recipients)
        environment = Environment(
            policy,
            module=repository.get_repo_shortname(),
            sender=config.get('from'),
            administrator=config.get('administrator'),
            maxlines=get_int(config, 'emailmaxlines'),
            maxlinelength=get_int(config, 'emailmaxlinelength', default=500),
            )

        update = check_update(repository, environment, refname, oldrev, newrev)
    except UsageError as e:
        sys.stderr.write('fatal: update: %s\n' % (e,))
        sys.exit(1)
    except CommandError as e:
        sys.stderr.write('fatal: update: %s\n' % (e,))
        sys.exit(1)
    except PolicyError as e:
        sys.stderr.write('*** %s\n*** - update of %s rejected.\n' % (e, refname,))
        sys.exit(1)
    except ConfigurationException as e:
        sys.exit(str(e))

    if update is None:
        return

    # The update is allowed from here on, so mailer problems must not
    # reject it.
    if options.stdout:
        mailer = OutputMailer(sys.stdout)
    else:
        try:
            mailer = ThrottledMailer(
                SendMailer(get_mailer_command(options, config)),
                get_delay(options, config),
                )
        except ConfigurationException as e:
            sys.stderr.write('*** %s\n***  - no email will be sent.\n' % (e,))
            return

    (event, classification) = update
    send_notifications(repository, environment, mailer, event, classification)


if __name__ == '__main__':
    main(sys.argv[1:])
