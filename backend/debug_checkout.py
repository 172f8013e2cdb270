import os

import requests

base_url = os.environ.get("BACKEND_URL", "http://localhost:5000")
url = f"{base_url}/create-checkout-session"
payload = {
    "cart": [
        {"name": "Test Product", "price": 10.00},
        {"name": "Second Product", "price": 4.99, "quantity": 2},
    ]
}

try:
    print(f"Sending POST request to {url}...")
    response = requests.post(url, json=payload, timeout=30)
    print(f"Status Code: {response.status_code}")
    print("Response Body:")
    print(response.text)
except requests.RequestException as e:
    print(f"Error: {e}")
