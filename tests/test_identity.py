from datetime import datetime, timedelta

import pytest

from identity import AuthError, auth_error_message


def register(identity, outbox, email="ana@example.com", password="secret123"):
    principal = identity.create_user(email, password, "Ana")
    return principal, outbox[-1][2]


def test_register_sends_verification_and_stays_unverified(identity, outbox) -> None:
    principal, token = register(identity, outbox)

    assert principal.email == "ana@example.com"
    assert principal.email_verified is False
    assert principal.provider_ids == ("password",)
    assert outbox[-1][:2] == ("ana@example.com", "Verify your email")

    verified = identity.verify_email(token)
    assert verified.uid == principal.uid
    assert verified.email_verified is True


def test_verify_email_rejects_bad_token(identity) -> None:
    with pytest.raises(AuthError) as excinfo:
        identity.verify_email("not-a-token")
    assert excinfo.value.code == "invalid-action-code"


def test_register_rejects_duplicates_and_bad_input(identity, outbox) -> None:
    register(identity, outbox)

    with pytest.raises(AuthError) as duplicate:
        identity.create_user("ANA@example.com", "another123")
    with pytest.raises(AuthError) as invalid:
        identity.create_user("not-an-email", "secret123")
    with pytest.raises(AuthError) as weak:
        identity.create_user("bo@example.com", "123")

    assert duplicate.value.code == "email-already-in-use"
    assert invalid.value.code == "invalid-email"
    assert weak.value.code == "weak-password"


def test_sign_in_checks_password(identity, outbox) -> None:
    principal, _token = register(identity, outbox)

    assert identity.sign_in_with_password("ana@example.com", "secret123").uid == principal.uid
    with pytest.raises(AuthError) as wrong:
        identity.sign_in_with_password("ana@example.com", "nope1234")
    with pytest.raises(AuthError) as missing:
        identity.sign_in_with_password("ghost@example.com", "secret123")

    assert wrong.value.code == "wrong-password"
    assert missing.value.code == "user-not-found"


def test_repeated_failures_lock_the_account(clocked_identity, clock) -> None:
    identity = clocked_identity
    identity.create_user("ana@example.com", "secret123")

    codes = []
    for _ in range(5):
        with pytest.raises(AuthError) as excinfo:
            identity.sign_in_with_password("ana@example.com", "wrong-one")
        codes.append(excinfo.value.code)
    assert codes == ["wrong-password"] * 4 + ["too-many-requests"]

    with pytest.raises(AuthError) as locked:
        identity.sign_in_with_password("ana@example.com", "secret123")
    assert locked.value.code == "too-many-requests"

    clock.advance(minutes=16)
    assert identity.sign_in_with_password("ana@example.com", "secret123").email


def test_password_change_requires_recent_login(clocked_identity, clock) -> None:
    identity = clocked_identity
    principal = identity.create_user("ana@example.com", "secret123")

    clock.advance(minutes=6)
    with pytest.raises(AuthError) as stale:
        identity.update_password(principal.uid, "fresh-pass")
    assert stale.value.code == "requires-recent-login"

    with pytest.raises(AuthError) as wrong:
        identity.reauthenticate(principal.uid, "bad-pass")
    assert wrong.value.code == "wrong-password"

    identity.reauthenticate(principal.uid, "secret123")
    identity.update_password(principal.uid, "fresh-pass")
    assert identity.sign_in_with_password("ana@example.com", "fresh-pass").uid == principal.uid


def test_password_reset_flow(identity, outbox) -> None:
    principal, _token = register(identity, outbox)

    identity.send_password_reset("ana@example.com")
    to, subject, token = outbox[-1]
    assert (to, subject) == ("ana@example.com", "Reset your password")

    with pytest.raises(AuthError) as weak:
        identity.confirm_password_reset(token, "abc")
    assert weak.value.code == "weak-password"

    identity.confirm_password_reset(token, "brand-new-1")
    assert identity.sign_in_with_password("ana@example.com", "brand-new-1").uid == principal.uid

    with pytest.raises(AuthError) as unknown:
        identity.send_password_reset("ghost@example.com")
    assert unknown.value.code == "user-not-found"


def test_verification_token_cannot_reset_password(identity, outbox) -> None:
    _principal, verify_token = register(identity, outbox)

    with pytest.raises(AuthError) as excinfo:
        identity.confirm_password_reset(verify_token, "brand-new-1")
    assert excinfo.value.code == "invalid-action-code"


def test_federated_sign_in_creates_verified_account(identity) -> None:
    first = identity.sign_in_with_federated("google.com", "g-1", "bo@example.com", "Bo")
    again = identity.sign_in_with_federated("google.com", "g-1", "bo@example.com")

    assert first.email_verified is True
    assert first.provider_id == "google.com"
    assert again.uid == first.uid


def test_federated_sign_in_refuses_existing_email(identity, outbox) -> None:
    register(identity, outbox)

    with pytest.raises(AuthError) as excinfo:
        identity.sign_in_with_federated("google.com", "g-1", "ana@example.com")
    assert excinfo.value.code == "account-exists-with-different-credential"


def test_link_and_unlink_providers(identity, outbox) -> None:
    principal, _token = register(identity, outbox)
    other = identity.sign_in_with_federated("github.com", "gh-9", "bo@example.com")

    linked = identity.link_provider(principal.uid, "google.com", "g-1")
    assert linked.provider_ids == ("password", "google.com")

    with pytest.raises(AuthError) as taken:
        identity.link_provider(principal.uid, "github.com", "gh-9")
    with pytest.raises(AuthError) as twice:
        identity.link_provider(principal.uid, "google.com", "g-2")
    assert taken.value.code == "credential-already-in-use"
    assert twice.value.code == "provider-already-linked"

    assert identity.unlink_provider(principal.uid, "password").provider_ids == ("google.com",)
    with pytest.raises(AuthError) as missing:
        identity.unlink_provider(other.uid, "google.com")
    assert missing.value.code == "no-such-provider"

    with pytest.raises(AuthError) as last:
        identity.unlink_provider(principal.uid, "google.com")
    assert last.value.code == "last-provider"
    assert identity.get_principal(principal.uid).provider_ids == ("google.com",)


def test_sign_out_revokes_earlier_sessions(clocked_identity, clock) -> None:
    identity = clocked_identity
    clock.current = datetime.utcnow() + timedelta(seconds=5)
    principal = identity.create_user("ana@example.com", "secret123")
    token = identity.issue_session(principal)
    assert identity.principal_from_session(token).uid == principal.uid

    identity.sign_out(principal.uid)

    assert identity.principal_from_session(token) is None
    assert identity.principal_from_session("forged") is None
    assert identity.principal_from_session(None) is None


def test_error_messages_depend_on_operation() -> None:
    assert auth_error_message("wrong-password") == (
        "The password you entered is wrong. Try again."
    )
    assert auth_error_message("wrong-password", "password") == (
        "The current password is wrong."
    )
    assert auth_error_message("something-new", "register") == "Registration failed."
    assert auth_error_message("something-new", "unknown") == "Authentication failed."


def test_password_only_account_keeps_its_password(identity, outbox) -> None:
    principal, _token = register(identity, outbox)

    with pytest.raises(AuthError) as excinfo:
        identity.unlink_provider(principal.uid, "password")

    assert excinfo.value.code == "last-provider"
    assert identity.sign_in_with_password("ana@example.com", "secret123").uid == principal.uid


def test_profile_errors_have_their_own_messages() -> None:
    assert auth_error_message("user-not-found", "profile") == (
        "Your account could not be found. Sign in again."
    )
    assert auth_error_message("something-new", "profile") == (
        "Could not update your profile."
    )
    assert auth_error_message("last-provider", "link") == (
        "Link another sign-in method before removing this one."
    )
