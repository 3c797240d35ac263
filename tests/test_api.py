"""End-to-end tests of the HTTP API against in-memory collaborators."""

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from conftest import make_user, published
from database import get_db
from main import app, get_content_store, get_ledger


@pytest.fixture
def client(db, ledger, content_store):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_content_store] = lambda: content_store
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user['_id'])})}"}


def png(name):
    return (name, b"\x89PNG\r\n", "image/png")


def create_comic(client, user, title="Star Harbor"):
    response = client.post("/comics", data={"title": title, "genres": "sci-fi, drama"},
                           files={"cover": png("cover.png")}, headers=auth(user))
    assert response.status_code == 201, response.text
    return response.json()["data"]


def create_episode(client, user, comic_id, number=1, max_supply=0):
    response = client.post(
        f"/comics/{comic_id}/episodes",
        data={"title": "Arrival", "episode_number": str(number), "max_supply": str(max_supply), "mint_price": "5"},
        files=[("cover", png("cover.png")), ("pages", png("p1.png")), ("pages", png("p2.png"))],
        headers=auth(user),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealth:
    def test_root(self, client):
        body = client.get("/").json()
        assert body["success"] is True

    def test_unknown_route_uses_error_envelope(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "not_found", "message": "Not Found"}


class TestAuth:
    def test_register_login_me(self, client):
        response = client.post("/auth/register", json={
            "email": "new@example.com", "password": "password123", "display_name": "New"})
        assert response.status_code == 201
        assert response.json()["access_token"]

        response = client.post("/auth/login", data={"username": "new@example.com", "password": "password123"})
        assert response.status_code == 200
        token = response.json()["data"]["access_token"]

        me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"}).json()["data"]
        assert me["email"] == "new@example.com"
        assert "password_hash" not in me

    def test_wrong_password(self, client):
        client.post("/auth/register", json={
            "email": "new@example.com", "password": "password123", "display_name": "New"})
        response = client.post("/auth/login", data={"username": "new@example.com", "password": "nope-nope"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_duplicate_email(self, client):
        payload = {"email": "dup@example.com", "password": "password123", "display_name": "Dup"}
        client.post("/auth/register", json=payload)
        response = client.post("/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_requires_token(self, client):
        response = client.get("/users/me")
        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "unauthorized", "message": "Not authenticated"}


class TestWallet:
    def test_link_wallet(self, client, db):
        user = make_user(db, "fresh")
        response = client.put("/users/me/wallet", json={"account_id": "0.0.555"}, headers=auth(user))
        assert response.status_code == 200
        assert response.json()["data"]["wallet"]["account_id"] == "0.0.555"

    def test_invalid_account_id(self, client, db):
        user = make_user(db, "fresh")
        response = client.put("/users/me/wallet", json={"account_id": "wallet"}, headers=auth(user))
        assert response.status_code == 400

    def test_account_taken(self, client, db, creator):
        user = make_user(db, "fresh")
        response = client.put("/users/me/wallet", json={"account_id": "0.0.100"}, headers=auth(user))
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"


class TestComicFlow:
    def test_create_and_list_comics(self, client, creator):
        comic = create_comic(client, creator)
        assert comic["genres"] == ["sci-fi", "drama"]
        assert comic["cover_image"]["url"].startswith("https://gateway.test/ipfs/")

        listing = client.get("/comics", params={"q": "harbor"}).json()["data"]
        assert listing["pagination"]["total"] == 1
        assert listing["comics"][0]["id"] == comic["id"]

    def test_comic_requires_wallet(self, client, db):
        user = make_user(db, "walletless")
        response = client.post("/comics", data={"title": "Nope"}, headers=auth(user))
        assert response.status_code == 400
        assert response.json()["message"] == "Ledger wallet not connected"

    def test_publish_mint_read(self, client, creator, reader):
        comic = create_comic(client, creator)
        episode = create_episode(client, creator, comic["id"], max_supply=1)
        assert episode["content"]["total_pages"] == 2

        response = client.post(f"/episodes/{episode['id']}/publish", json={}, headers=auth(creator))
        assert response.json()["data"]["status"] == "published"
        assert "pages" not in response.json()["data"]["content"]

        response = client.get(f"/episodes/{episode['id']}/read", headers=auth(reader))
        assert response.status_code == 403

        response = client.post(f"/episodes/{episode['id']}/mint", json={"quantity": 1}, headers=auth(reader))
        assert response.status_code == 200, response.text
        assert response.json()["data"]["total_cost"] == 5

        response = client.post(f"/episodes/{episode['id']}/mint", json={"quantity": 1}, headers=auth(creator))
        assert response.status_code == 400
        assert response.json()["error"] == "supply_exceeded"
        assert response.json()["details"] == {"requested": 1, "available": 0}

        data = client.get(f"/episodes/{episode['id']}/read", headers=auth(reader)).json()["data"]
        assert data["access"] == "granted"
        assert len(data["pages"]) == 2

        response = client.put(f"/episodes/{episode['id']}/progress",
                              json={"current_page": 1, "total_pages": 2}, headers=auth(reader))
        assert response.json()["data"]["progress"]["percentage"] == 50

        collection = client.get("/users/me/collection", headers=auth(reader)).json()["data"]
        assert collection[0]["nfts"][0]["owner"] == "0.0.200"

    def test_only_creator_publishes(self, client, creator, reader):
        comic = create_comic(client, creator)
        episode = create_episode(client, creator, comic["id"])
        response = client.post(f"/episodes/{episode['id']}/publish", json={}, headers=auth(reader))
        assert response.status_code == 403
        assert response.json()["error"] == "access_denied"

    def test_rejects_unsupported_upload(self, client, creator):
        comic = create_comic(client, creator)
        response = client.post(
            f"/comics/{comic['id']}/episodes",
            data={"title": "Arrival", "episode_number": "1"},
            files=[("cover", ("cover.gif", b"GIF89a", "image/gif")), ("pages", png("p1.png"))],
            headers=auth(creator),
        )
        assert response.status_code == 400

    def test_unknown_episode(self, client):
        response = client.get("/episodes/not-an-id")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_mint_requires_wallet(self, client, db, comic):
        episode = published(db, comic)
        user = make_user(db, "walletless")
        response = client.post(f"/episodes/{episode['_id']}/mint", json={"quantity": 1}, headers=auth(user))
        assert response.status_code == 400
        assert response.json()["message"] == "Ledger wallet not connected"


class TestMarketplaceApi:
    def test_list_and_buy(self, client, db, comic, reader):
        episode = published(db, comic, minted=[(1, "0.0.200")])
        buyer = make_user(db, "buyer", "0.0.300")
        response = client.post("/listings", json={
            "episode_id": str(episode["_id"]), "serial_number": 1, "price": 12.5}, headers=auth(reader))
        assert response.status_code == 201
        listing_id = response.json()["data"]["id"]

        stats = client.get("/stats/marketplace").json()["data"]
        assert stats["floor_price"] == 12.5

        response = client.post(f"/listings/{listing_id}/buy", headers=auth(buyer))
        assert response.status_code == 200, response.text
        assert response.json()["data"]["price"]["amount"] == 12.5

        platform = client.get("/stats/platform").json()["data"]
        assert platform["completed_sales_volume"] == 12.5
        assert client.get("/listings").json()["data"] == []
