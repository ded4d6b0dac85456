import pytest

from conftest import sha, make_config, RecordingMailer
import git_updatehook
from git_updatehook import ZEROS


def make_environment(**kw):
    return git_updatehook.Environment(make_config(**kw), module='project', pusher='pusher')


def run(repo, environment, mailer, refname, oldrev, newrev):
    return git_updatehook.run_as_update_hook(repo, environment, mailer, refname, oldrev, newrev)


def test_linear_push_mails_each_commit_in_order(repo, mailer):
    sent = run(repo, make_environment(), mailer, 'refs/heads/master', sha(1), sha(3))
    assert sent == 2
    assert [m.get_header('X-Git-Rev') for m in mailer.sent] == [sha(2), sha(3)]


def test_each_recipient_gets_own_messages(repo, mailer):
    environment = make_environment(recipients=('a@example.com', 'b@example.com'))
    run(repo, environment, mailer, 'refs/heads/master', sha(1), sha(3))
    assert [(m.recipient, m.get_header('X-Git-Rev')) for m in mailer.sent] == [
        ('a@example.com', sha(2)),
        ('a@example.com', sha(3)),
        ('b@example.com', sha(2)),
        ('b@example.com', sha(3)),
        ]


def test_frozen_branch_rejected_before_any_email(repo, mailer):
    environment = make_environment(frozen_branches=frozenset(['release']))
    with pytest.raises(git_updatehook.FrozenBranchError):
        run(repo, environment, mailer, 'refs/heads/release', sha(1), sha(3))
    assert mailer.sent == []
    assert run(repo, environment, mailer, 'refs/heads/feature', sha(1), sha(3)) == 2


def test_protected_tag_deletion(repo, mailer):
    with pytest.raises(git_updatehook.ProtectedDeletionError):
        run(
            repo, make_environment(protect_tag_deletion=True), mailer,
            'refs/tags/v1.0', sha(3), ZEROS,
            )
    assert mailer.sent == []

    sent = run(repo, make_environment(), mailer, 'refs/tags/v1.0', sha(3), ZEROS)
    assert sent == 1
    assert mailer.sent[0].subject == '[project] v1.0: tag deleted'


def test_mail_branch_opt_in(repo, mailer, capsys):
    environment = make_environment(mail_branches=frozenset(['main']))
    assert run(repo, environment, mailer, 'refs/heads/scratch', sha(1), sha(3)) == 0
    assert mailer.sent == []
    assert 'no email will be sent' in capsys.readouterr().err
    assert run(repo, environment, mailer, 'refs/heads/main', sha(1), sha(3)) == 2


def test_no_recipients_is_not_an_error(repo, mailer, capsys):
    assert run(repo, make_environment(recipients=()), mailer, 'refs/heads/master', sha(1), sha(3)) == 0
    assert 'no recipients configured' in capsys.readouterr().err


def test_delivery_failure_does_not_fail_the_hook(repo):
    mailer = RecordingMailer(fail_for=['a@example.com'])
    environment = make_environment(recipients=('a@example.com', 'b@example.com'))
    assert run(repo, environment, mailer, 'refs/heads/master', sha(1), sha(3)) == 2
    assert set(m.recipient for m in mailer.sent) == set(['b@example.com'])


def test_composition_failure_does_not_fail_the_hook(repo, mailer, capsys):
    def broken(rev):
        raise git_updatehook.TagParseError('bad tag')

    repo.add_tag(sha(10), 'v1.0', sha(3))
    repo.read_tag = broken
    assert run(repo, make_environment(), mailer, 'refs/tags/v1.0', ZEROS, sha(10)) == 0
    assert 'Error while generating email' in capsys.readouterr().err


def test_invalid_revision_is_a_usage_error(repo, mailer):
    with pytest.raises(git_updatehook.UsageError):
        run(repo, make_environment(), mailer, 'refs/heads/master', sha(1), sha(99))


@pytest.mark.parametrize('args', [
    [],
    ['refs/heads/master', sha(1)],
    ['refs/heads/master', sha(1), sha(2), 'extra'],
    ['refs/heads/master', '', sha(2)],
    [' ', sha(1), sha(2)],
    ])
def test_validate_arguments(args):
    with pytest.raises(git_updatehook.UsageError):
        git_updatehook.validate_arguments(args)


def test_validate_arguments_accepts_three():
    args = ['refs/heads/master', sha(1), sha(2)]
    assert git_updatehook.validate_arguments(args) == tuple(args)


class FakeConfig(object):
    def __init__(self, values=None):
        self.values = values or {}

    def get(self, name, default=None):
        return self.values.get(name, default)

    def get_recipients(self, name, default=None):
        return self.values.get(name, default)


@pytest.fixture
def hook(monkeypatch, tmp_path, repo):
    """Patch main() to run against tmp_path and the fake repository."""

    repo.get_repo_shortname = lambda: 'project'
    config = FakeConfig({'recipients': 'list@example.com'})
    monkeypatch.setattr(git_updatehook, 'find_git_dir', lambda: str(tmp_path))
    monkeypatch.setattr(git_updatehook, 'GitRepository', lambda git_dir: repo)
    monkeypatch.setattr(git_updatehook, 'Config', lambda section, git_dir: config)
    monkeypatch.delenv('UPDATEHOOK_MAILER', raising=False)
    monkeypatch.delenv('UPDATEHOOK_RECIPIENTS', raising=False)
    return tmp_path


def test_main_usage_error_exits_nonzero(capsys):
    with pytest.raises(SystemExit) as excinfo:
        git_updatehook.main(['refs/heads/master'])
    assert excinfo.value.code != 0
    assert 'fatal: update:' in capsys.readouterr().err


def test_main_stdout(hook, capsys):
    git_updatehook.main(['--stdout', 'refs/heads/master', sha(2), sha(3)])
    out = capsys.readouterr().out
    assert out.count(git_updatehook.OutputMailer.SEPARATOR) == 2
    assert 'Subject: [project] master 01/01: Fix feature\n' in out


def test_main_policy_rejection_exits_nonzero(hook, capsys):
    hook.joinpath('frozen-branches').write_text('master\n')
    with pytest.raises(SystemExit) as excinfo:
        git_updatehook.main(['--stdout', 'refs/heads/master', sha(2), sha(3)])
    assert excinfo.value.code == 1
    captured = capsys.readouterr()
    assert 'frozen' in captured.err
    assert captured.out == ''


def test_main_mail_opt_out_exits_zero(hook, capsys):
    hook.joinpath('mail-branches').write_text('main\n')
    git_updatehook.main(['--stdout', 'refs/heads/scratch', sha(2), sha(3)])
    assert capsys.readouterr().out == ''


def test_main_without_mailer_warns_but_accepts_the_update(hook, capsys):
    git_updatehook.main(['refs/heads/master', sha(2), sha(3)])
    err = capsys.readouterr().err
    assert 'No mailer program is configured' in err
    assert 'no email will be sent' in err


def test_main_without_mailer_still_enforces_policy(hook):
    hook.joinpath('frozen-branches').write_text('master\n')
    with pytest.raises(SystemExit) as excinfo:
        git_updatehook.main(['refs/heads/master', sha(2), sha(3)])
    assert excinfo.value.code == 1


def test_main_mail_opt_out_needs_no_mailer(hook, capsys):
    hook.joinpath('mail-branches').write_text('main\n')
    git_updatehook.main(['refs/heads/scratch', sha(2), sha(3)])
    err = capsys.readouterr().err
    assert 'No mailer' not in err


def test_main_without_recipients_needs_no_mailer(hook, monkeypatch, capsys):
    monkeypatch.setattr(git_updatehook, 'Config', lambda section, git_dir: FakeConfig())
    git_updatehook.main(['refs/heads/master', sha(2), sha(3)])
    err = capsys.readouterr().err
    assert 'no recipients configured' in err
    assert 'No mailer' not in err


def test_main_git_failure_is_fatal(hook, repo, capsys):
    def broken(rev):
        raise git_updatehook.CommandError(['git', 'cat-file', '-t', rev], 128)

    repo.get_object_type = broken
    with pytest.raises(SystemExit) as excinfo:
        git_updatehook.main(['--stdout', 'refs/heads/master', sha(2), sha(3)])
    assert excinfo.value.code == 1
    assert 'fatal: update: Command "git cat-file -t' in capsys.readouterr().err


def test_main_sender_from_config(hook, monkeypatch, capsys):
    config = FakeConfig({'recipients': 'list@example.com', 'from': 'Git <git@example.com>'})
    monkeypatch.setattr(git_updatehook, 'Config', lambda section, git_dir: config)
    git_updatehook.main(['--stdout', 'refs/heads/master', sha(2), sha(3)])
    assert '\nFrom: Git <git@example.com>\n' in capsys.readouterr().out


def test_main_sends_with_configured_mailer(hook, monkeypatch):
    sent = []

    class FakeSendMailer(RecordingMailer):
        def __init__(self, command):
            RecordingMailer.__init__(self)
            self.command = command
            sent.append(self)

    monkeypatch.setattr(git_updatehook, 'SendMailer', FakeSendMailer)
    git_updatehook.main([
        '--mailer', '/usr/sbin/sendmail -oi', '--delay', '0',
        'refs/heads/master', sha(1), sha(3),
        ])
    (mailer,) = sent
    assert mailer.command == ['/usr/sbin/sendmail', '-oi']
    assert [m.get_header('X-Git-Rev') for m in mailer.sent] == [sha(2), sha(3)]
