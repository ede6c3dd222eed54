import json, time, sys
from nacl.signing import SigningKey
from educhain.auth import sign_session
from educhain.util import b64d

def main(institution_id: str, plan_id: str = None, verified: bool = False, name: str = ""):
    key = json.load(open("secrets/auth_service_key.json","r",encoding="utf-8"))
    sk = SigningKey(b64d(key["private_key_b64"]))
    now = int(time.time())
    claims = {
        "kid": key["kid"],
        "iat": now,
        "exp": now + 3600,
        "institutionId": institution_id,
        "institutionName": name or institution_id,
        "isVerified": verified,
        "activeSubscriptionPlanId": plan_id,
    }
    print(sign_session(claims, sk))

if __name__ == "__main__":
    args = [a for a in sys.argv[1:] if a != "--verified"]
    if len(args) not in (1, 2):
        print("Usage: python tools/make_session_token.py <institution_id> [plan_id] [--verified]"); raise SystemExit(2)
    main(args[0], args[1] if len(args) == 2 else None, "--verified" in sys.argv)
