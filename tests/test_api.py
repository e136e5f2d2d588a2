"""
Tests for the REST API
"""

from datetime import timedelta
from decimal import Decimal

from fastapi.testclient import TestClient

from coop_banking import __version__
from coop_banking.access import Role
from coop_banking.api import create_app
from coop_banking.api.auth import create_access_token
from coop_banking.config import CoopBankConfig
from coop_banking.storage import InMemoryStorage
from coop_banking.system import BankingSystem


class TestBankingAPI:

    def setup_method(self):
        self.config = CoopBankConfig(database_url="memory://", jwt_secret="test-secret-key-long-enough-for-hs256",
                                     storage_transaction_timeout_seconds=2.0)
        self.system = BankingSystem(self.config, InMemoryStorage())
        self.bank = self.system.banks.register_bank("ABCDEF", "First Cooperative Bank")
        self.other_bank = self.system.banks.register_bank("GHIJKL", "Second Cooperative Bank")
        self.client = TestClient(create_app(self.system))

        self.member = self.headers("member-1", Role.MEMBER, self.bank.id)
        self.other_member = self.headers("member-2", Role.MEMBER, self.bank.id)
        self.manager = self.headers("manager-1", Role.MANAGER, self.bank.id)
        self.foreign_admin = self.headers("admin-2", Role.ADMIN, self.other_bank.id)
        self.super_admin = self.headers("root", Role.SUPER_ADMIN, None)

    def headers(self, actor_id, role, tenant_id, **kwargs):
        token = create_access_token(actor_id, role, tenant_id, self.config, **kwargs)
        return {"Authorization": f"Bearer {token}"}

    def open_account(self, account_type="current", headers=None, **fields):
        response = self.client.post("/accounts", json={"account_type": account_type, **fields},
                                    headers=headers or self.member)
        assert response.status_code == 201, response.json()
        return response.json()["data"]["account"]

    def deposit(self, account_id, amount, headers=None, **fields):
        return self.client.post("/transactions/deposit", json={
            "account_id": account_id, "amount": amount, "description": "Cash deposit", **fields
        }, headers=headers or self.member)

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "coop_banking_api", "version": __version__}

    def test_authentication_is_required(self):
        assert self.client.get("/accounts/mine").json()["detail"] == "Not authenticated"
        assert self.client.get("/accounts/mine").status_code == 401

        response = self.client.get("/accounts/mine", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

        expired = self.headers("member-1", Role.MEMBER, self.bank.id, expires_in=timedelta(seconds=-1))
        response = self.client.get("/accounts/mine", headers=expired)
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_token_without_tenant_is_rejected(self):
        response = self.client.get("/accounts/mine", headers=self.headers("member-1", Role.MEMBER, None))
        assert response.status_code == 401

    def test_open_and_read_account(self):
        account = self.open_account("savings", nominee={"name": "Asha", "relationship": "Spouse"})
        assert account["account_number"] == "000000000001"
        assert account["minimum_balance"] == "1000.00"
        assert account["available_balance"] == "-1000.00"
        assert account["nominee"]["name"] == "Asha"

        response = self.client.get(f"/accounts/{account['id']}", headers=self.member)
        assert response.status_code == 200
        assert response.json()["data"]["account"]["id"] == account["id"]

        response = self.client.get("/accounts/mine", headers=self.member)
        assert [a["id"] for a in response.json()["data"]["accounts"]] == [account["id"]]

        response = self.client.get(f"/accounts/{account['id']}", headers=self.other_member)
        assert response.status_code == 403
        assert response.json()["data"]["error"]["kind"] == "access_denied"

        response = self.client.get("/accounts/missing", headers=self.member)
        assert response.status_code == 404

    def test_duplicate_account_type(self):
        self.open_account("savings")
        response = self.client.post("/accounts", json={"account_type": "savings"}, headers=self.member)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "You already have an active savings account"
        assert body["data"]["error"]["kind"] == "duplicate_account_type"

    def test_invalid_nominee_is_rejected(self):
        response = self.client.post("/accounts", json={
            "account_type": "savings", "nominee": {"name": "Asha", "phone": "123"}
        }, headers=self.member)
        assert response.status_code == 400
        assert response.json()["data"]["error"]["kind"] == "validation_error"

    def test_deposit_withdraw_and_balance(self):
        account = self.open_account()

        response = self.deposit(account["id"], "500")
        assert response.status_code == 201
        body = response.json()
        assert body["data"]["new_balance"] == "500.00"
        assert body["data"]["states"] == ["initiated", "validated", "applied", "persisted", "completed"]
        assert body["data"]["transaction"]["transaction_type"] == "deposit"

        response = self.client.post("/transactions/withdraw", json={
            "account_id": account["id"], "amount": "600", "description": "ATM"
        }, headers=self.member)
        assert response.status_code == 400
        assert response.json()["message"] == "Insufficient balance. Available: 500.00"

        response = self.client.get(f"/accounts/{account['id']}/balance", headers=self.member)
        assert response.json()["data"]["balance"] == "500.00"

    def test_transfer(self):
        source = self.open_account("current")
        target = self.open_account("savings", minimum_balance="0")
        self.deposit(source["id"], "300")

        response = self.client.post("/transactions/transfer", json={
            "from_account_id": source["id"], "to_account_id": target["id"],
            "amount": "120.50", "description": "Savings"
        }, headers=self.member)

        assert response.status_code == 201
        assert response.json()["data"]["new_balance"] == "179.50"
        assert response.json()["data"]["to_account_balance"] == "120.50"

    def test_cross_tenant_access(self):
        account = self.open_account()
        response = self.deposit(account["id"], "10", headers=self.foreign_admin)

        assert response.status_code == 403
        assert response.json()["data"]["error"]["kind"] == "cross_tenant_access_denied"

    def test_duplicate_reference_conflict(self):
        account = self.open_account()
        assert self.deposit(account["id"], "10", reference_number="REF-9").status_code == 201

        response = self.deposit(account["id"], "10", reference_number="REF-9")
        assert response.status_code == 409
        assert response.json()["data"]["error"]["kind"] == "duplicate_reference"
        assert response.json()["data"]["error"]["retryable"] is False

    def test_malformed_request_body(self):
        response = self.client.post("/transactions/deposit", json={"amount": "10"}, headers=self.member)
        assert response.status_code == 422

        account = self.open_account()
        response = self.deposit(account["id"], "0")
        assert response.status_code == 400
        assert response.json()["message"] == "amount must be greater than 0"

    def test_staff_postings_and_reports(self):
        account = self.open_account()
        self.deposit(account["id"], "100")

        response = self.client.post("/transactions/interest", json={
            "account_id": account["id"], "amount": "2.50", "description": "Monthly interest"
        }, headers=self.manager)
        assert response.status_code == 201
        assert response.json()["data"]["new_balance"] == "102.50"

        response = self.client.post("/transactions/penalty", json={
            "account_id": account["id"], "amount": "5", "description": "Fee"
        }, headers=self.member)
        assert response.status_code == 403

        response = self.client.get("/transactions/admin/stats", headers=self.manager)
        assert response.json()["data"]["total_transactions"] == 2
        assert response.json()["data"]["total_volume"] == "102.50"

        response = self.client.get("/transactions/admin/all?limit=1", headers=self.manager)
        assert response.json()["data"]["pagination"] == {"current": 1, "pages": 2, "total": 2, "limit": 1}

        response = self.client.get("/accounts/admin/stats", headers=self.manager)
        assert response.json()["data"]["total_balance"] == "102.50"

        response = self.client.get("/accounts/admin/all", headers=self.member)
        assert response.status_code == 403

    def test_history_and_single_transaction(self):
        account = self.open_account()
        transaction_id = self.deposit(account["id"], "40").json()["data"]["transaction"]["id"]
        self.deposit(account["id"], "60")

        response = self.client.get(f"/transactions/history/{account['id']}?page=1&limit=1", headers=self.member)
        body = response.json()["data"]
        assert len(body["transactions"]) == 1
        assert body["pagination"]["total"] == 2

        response = self.client.get(f"/transactions/{transaction_id}", headers=self.member)
        assert response.status_code == 200
        assert Decimal(response.json()["data"]["transaction"]["amount"]) == Decimal("40")

        response = self.client.get(f"/transactions/{transaction_id}", headers=self.other_member)
        assert response.status_code == 403

        response = self.client.get("/transactions/TXN0", headers=self.member)
        assert response.status_code == 404

    def test_nominee_update_and_deactivation(self):
        account = self.open_account()

        response = self.client.put(f"/accounts/{account['id']}/nominee", json={
            "nominee": {"name": "Ravi", "relationship": "Son", "aadhaar_number": "123412341234"}
        }, headers=self.member)
        assert response.status_code == 200
        assert response.json()["data"]["account"]["nominee"]["name"] == "Ravi"

        self.deposit(account["id"], "5")
        response = self.client.put(f"/accounts/{account['id']}/deactivate", headers=self.member)
        assert response.status_code == 400
        assert response.json()["data"]["error"]["kind"] == "non_zero_balance"

        self.client.post("/transactions/withdraw", json={
            "account_id": account["id"], "amount": "5", "description": "Close out"
        }, headers=self.member)
        response = self.client.put(f"/accounts/{account['id']}/deactivate", headers=self.member)
        assert response.status_code == 200
        assert response.json()["data"]["account"]["is_active"] is False

    # Cooperative banks

    def test_registered_bank_serves_its_members(self):
        response = self.client.post("/banks", json={"bank_code": "mnopqr", "bank_name": "Third Cooperative Bank"},
                                    headers=self.super_admin)
        assert response.status_code == 201
        bank = response.json()["data"]["bank"]
        assert bank["bank_code"] == "MNOPQR"
        assert bank["is_active"] is True

        member = self.headers("member-9", Role.MEMBER, bank["id"])
        self.open_account(headers=member)

        response = self.client.put(f"/banks/{bank['id']}/deactivate", headers=self.super_admin)
        assert response.status_code == 200
        assert response.json()["data"]["bank"]["is_active"] is False

        response = self.client.get("/accounts/mine", headers=member)
        assert response.status_code == 403
        assert response.json()["message"] == "Access denied: cooperative bank is not active"

        assert self.client.put(f"/banks/{bank['id']}/activate", headers=self.super_admin).status_code == 200
        assert self.client.get("/accounts/mine", headers=member).status_code == 200

    def test_bank_management_is_reserved_for_super_admins(self):
        response = self.client.post("/banks", json={"bank_code": "MNOPQR", "bank_name": "Rogue Bank"},
                                    headers=self.manager)
        assert response.status_code == 403
        assert response.json()["data"]["error"]["kind"] == "access_denied"

        assert self.client.get("/banks", headers=self.member).status_code == 403
        assert self.client.put(f"/banks/{self.bank.id}/deactivate", headers=self.manager).status_code == 403
        assert self.system.banks.is_active(self.bank.id)

    def test_bank_registration_validation(self):
        response = self.client.post("/banks", json={"bank_code": "ABCDEF", "bank_name": "Copy"},
                                    headers=self.super_admin)
        assert response.status_code == 400
        assert response.json()["message"] == "Bank code 'ABCDEF' already exists"

        response = self.client.post("/banks", json={"bank_code": "AB12", "bank_name": "Short"},
                                    headers=self.super_admin)
        assert response.status_code == 400

        assert self.client.post("/banks", json={"bank_name": "No code"}, headers=self.super_admin).status_code == 422

    def test_list_and_read_banks(self):
        self.system.banks.deactivate_bank(self.other_bank.id)

        response = self.client.get("/banks", headers=self.super_admin)
        assert [b["bank_code"] for b in response.json()["data"]["banks"]] == ["ABCDEF", "GHIJKL"]

        response = self.client.get("/banks?is_active=false", headers=self.super_admin)
        assert [b["bank_code"] for b in response.json()["data"]["banks"]] == ["GHIJKL"]

        response = self.client.get(f"/banks/{self.bank.id}", headers=self.member)
        assert response.status_code == 200
        assert response.json()["data"]["bank"]["bank_name"] == "First Cooperative Bank"

        response = self.client.get(f"/banks/{self.bank.id}", headers=self.headers("admin-3", Role.ADMIN,
                                                                                  self.other_bank.id))
        assert response.status_code == 403

        assert self.client.get("/banks/missing", headers=self.super_admin).status_code == 404
        assert self.client.put("/banks/missing/activate", headers=self.super_admin).status_code == 404

    # Audit log

    def test_staff_read_their_banks_audit_events(self):
        account = self.open_account()
        self.deposit(account["id"], "25")
        self.deposit(account["id"], "10", headers=self.foreign_admin)

        response = self.client.get("/audit", headers=self.manager)
        assert response.status_code == 200
        events = response.json()["data"]["events"]
        assert {event["tenant_id"] for event in events} == {self.bank.id}
        assert {event["action"] for event in events} >= {"BANK_CREATE", "ACCOUNT_CREATE", "TRANSACTION_DEPOSIT"}

        response = self.client.get("/audit?action=TRANSACTION_DEPOSIT&outcome=SUCCESS&limit=1", headers=self.manager)
        body = response.json()["data"]
        assert body["pagination"] == {"current": 1, "pages": 1, "total": 1, "limit": 1}
        assert body["events"][0]["resource_type"] == "Transaction"
        assert body["events"][0]["details"]["amount"] == "25.00"

        response = self.client.get("/audit/stats", headers=self.manager)
        assert response.json()["data"]["by_action"]["TRANSACTION_DEPOSIT"] == {"success": 1, "failed": 1}

    def test_audit_access_rules(self):
        assert self.client.get("/audit", headers=self.member).status_code == 403
        assert self.client.get("/audit/stats", headers=self.member).status_code == 403

        response = self.client.get(f"/audit?tenant_id={self.other_bank.id}", headers=self.manager)
        assert response.status_code == 403
        assert response.json()["data"]["error"]["kind"] == "cross_tenant_access_denied"

        response = self.client.get("/audit?action=NOT_AN_ACTION", headers=self.manager)
        assert response.status_code == 400
        assert response.json()["data"]["error"]["kind"] == "validation_error"

        assert self.client.get("/audit?limit=500", headers=self.manager).status_code == 422

    def test_audit_chain_verification(self):
        self.deposit(self.open_account()["id"], "5")

        assert self.client.get("/audit/verify", headers=self.manager).status_code == 403

        response = self.client.get("/audit/verify", headers=self.super_admin)
        assert response.status_code == 200
        report = response.json()["data"]
        assert report["valid"] is True
        assert report["total_events"] == self.system.audit_trail.count_events()
        assert report["hash_errors"] == [] and report["chain_breaks"] == []

        response = self.client.get(f"/audit?tenant_id={self.other_bank.id}", headers=self.super_admin)
        assert [event["action"] for event in response.json()["data"]["events"]] == ["BANK_CREATE"]

    def test_audit_routes_need_an_audit_trail(self):
        config = CoopBankConfig(database_url="memory://", jwt_secret=self.config.jwt_secret,
                                enable_audit_logging=False)
        system = BankingSystem(config, InMemoryStorage())
        bank = system.banks.register_bank("ABCDEF", "First Cooperative Bank")
        client = TestClient(create_app(system))

        response = client.get("/audit", headers={"Authorization": "Bearer " + create_access_token(
            "manager-1", Role.MANAGER, bank.id, config)})
        assert response.status_code == 404
        assert response.json()["message"] == "Audit trail is not enabled"
