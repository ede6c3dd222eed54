import os, json
from nacl.signing import SigningKey
from educhain.util import b64e

os.makedirs("secrets", exist_ok=True)
os.makedirs("trust", exist_ok=True)

auth = SigningKey.generate()

with open("secrets/auth_service_key.json","w",encoding="utf-8") as f:
    json.dump({"kid":"auth-service-01", "private_key_b64": b64e(bytes(auth))}, f, indent=2)

trust = {
  "trust_store_id":"educhain-trust-store-dev",
  "trust_store_version":"0.3.0",
  "auth_service_keys": {
    "auth-service-01": b64e(bytes(auth.verify_key))
  }
}

with open("trust/trust_store.json","w",encoding="utf-8") as f:
    json.dump(trust, f, indent=2)

print("Generated auth service key + trust store.")
