import pytest

import settings
from errors import AuthorizationError, LedgerUnavailable, NotFoundError, ValidationError
from identity import IdentityResolver, sha256_hex


class TestRegister:
    def test_accounts_are_handed_out_in_order(self, identity) -> None:
        first = identity.register("Ann", "ann@example.com", "password-1", False)
        second = identity.register("Ben", "ben@example.com", "password-2", False)

        assert first.account == settings.ACCOUNT_INDEX_START
        assert second.account == settings.ACCOUNT_INDEX_START + 1
        assert first.uid != second.uid

    def test_record_and_email_index(self, identity, store) -> None:
        user = identity.register("Ann", "  Ann@Example.COM ", "password-1", True)

        record = store.read(f"users/{user.uid}")
        assert record["email"] == "ann@example.com"
        assert record["isOrganizer"] is True
        assert record["passwordHash"] != "password-1"
        assert store.read(f"emails/{sha256_hex('ann@example.com')}") == {"uid": user.uid}

    def test_duplicate_email(self, identity) -> None:
        identity.register("Ann", "ann@example.com", "password-1", False)
        with pytest.raises(ValidationError, match="already registered"):
            identity.register("Ann Again", "ANN@example.com", "password-2", False)

    def test_new_accounts_are_funded_by_role(self, identity, ledger) -> None:
        organizer = identity.register("Olga", "olga@example.com", "password-1", True)
        voter = identity.register("Val", "val@example.com", "password-2", False)

        assert ledger.funded == [
            (ledger.resolve_address(organizer.account), settings.ORGANIZER_FUNDING_MICROALGOS),
            (ledger.resolve_address(voter.account), settings.ACCOUNT_FUNDING_MICROALGOS),
        ]

    def test_funding_failure_is_not_fatal(self, identity, ledger, monkeypatch) -> None:
        def refuse(address, amount):
            raise LedgerUnavailable()

        monkeypatch.setattr(ledger, "fund", refuse)
        user = identity.register("Ann", "ann@example.com", "password-1", False)
        assert identity.get_user(user.uid) == user

    def test_failed_registration_frees_the_email(self, identity, store, monkeypatch) -> None:
        def broken_counter(path, field, start):
            raise RuntimeError("connection lost")

        with monkeypatch.context() as patched:
            patched.setattr(store, "increment", broken_counter)
            with pytest.raises(RuntimeError):
                identity.register("Ann", "ann@example.com", "password-1", False)

        assert store.read(f"emails/{sha256_hex('ann@example.com')}") is None
        user = identity.register("Ann", "ann@example.com", "password-1", False)
        assert identity.authenticate("ann@example.com", "password-1") == user

    def test_without_ledger(self, store) -> None:
        offline = IdentityResolver(store)
        user = offline.register("Ann", "ann@example.com", "password-1", False)

        assert offline.account_for(user.uid) == user.account
        with pytest.raises(LedgerUnavailable):
            offline.address_for(user.uid)


class TestLookup:
    def test_authenticate(self, identity, organizer) -> None:
        user = identity.authenticate("OLIVIA@example.com", "organizer-pass")
        assert user == organizer
        assert user.info() == {
            "name": "Olivia Organizer",
            "email": "olivia@example.com",
            "userID": organizer.uid,
            "accountType": "Organizer",
        }

    @pytest.mark.parametrize(
        ("email", "password"),
        [("olivia@example.com", "wrong-pass"), ("nobody@example.com", "organizer-pass")],
    )
    def test_bad_credentials(self, identity, organizer, email, password) -> None:
        with pytest.raises(AuthorizationError):
            identity.authenticate(email, password)

    def test_address_for(self, identity, ledger, registered_voters) -> None:
        vera = registered_voters[0]
        assert identity.address_for(vera.uid) == ledger.resolve_address(vera.account)
        assert identity.address_for("ghost") is None

    def test_require_user(self, identity) -> None:
        with pytest.raises(NotFoundError):
            identity.require_user("ghost")
