from __future__ import annotations

from partners.canada_post import RETRIEVE_URL

ITEM = {
    "Id": "CA|CP|B|123",
    "Line1": "100 Queen St W",
    "Line2": "Suite 400",
    "City": "Toronto",
    "Province": "ON",
    "PostalCode": "M5H 2N2",
}


def test_address_details_maps_first_item(client, upstream, monkeypatch):
    monkeypatch.setenv("POSTCANADA_ORIGIN", "https://portal.example.ca")
    upstream.add("GET", RETRIEVE_URL, json_body={"Items": [ITEM]})

    response = client.post("/api/postcanada/address-details", json={"addressId": "CA|CP|B|123", "searchTerm": "100 Queen"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "address": {
            "street": "100 Queen St W",
            "unit": "Suite 400",
            "city": "Toronto",
            "province": "ON",
            "postalCode": "M5H 2N2",
        },
    }
    sent = upstream.calls[0]
    assert sent.url.params["Key"] == "pc-key"
    assert sent.url.params["Id"] == "CA|CP|B|123"
    assert sent.headers["origin"] == "https://portal.example.ca"
    assert sent.headers["referer"] == "https://portal.example.ca"


def test_address_details_requires_id(client, upstream):
    response = client.post("/api/postcanada/address-details", json={"searchTerm": "100 Queen"})

    assert response.status_code == 400
    assert response.json()["error"] == "Address ID is required"
    assert upstream.calls == []


def test_missing_api_key_is_config_error(client, upstream, monkeypatch):
    monkeypatch.delenv("POSTCANADA_API_KEY")

    response = client.post("/api/postcanada/address-details", json={"addressId": "x"})

    assert response.status_code == 500
    assert upstream.calls == []


def test_provider_error_is_reported_with_resolution(client, upstream):
    upstream.add(
        "GET",
        RETRIEVE_URL,
        json_body={"Error": "2", "Description": "Unknown key", "Resolution": "Check the key is correct"},
    )

    response = client.post("/api/postcanada/address-details", json={"addressId": "x"})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "Post Canada API Error",
        "details": "Unknown key",
        "resolution": "Check the key is correct",
    }


def test_error_item_is_reported(client, upstream):
    upstream.add(
        "GET",
        RETRIEVE_URL,
        json_body={"Items": [{"Error": "1001", "Description": "Id Invalid", "Cause": "The Id parameter was not valid."}]},
    )

    response = client.post("/api/postcanada/address-details", json={"addressId": "x"})

    assert response.status_code == 400
    body = response.json()
    assert body["details"] == "Id Invalid"
    assert body["resolution"] == "Please check your API configuration"


def test_empty_items_is_server_error(client, upstream):
    upstream.add("GET", RETRIEVE_URL, json_body={"Items": []})

    response = client.post("/api/postcanada/address-details", json={"addressId": "x"})

    assert response.status_code == 500
    assert response.json()["error"] == "Invalid response format from Post Canada"
