#!/usr/bin/env python3
import argparse, os, time

from chatrelay.core.auth import HMAC_ALGORITHMS, encode_token


def main():
    ap = argparse.ArgumentParser(description="Issue a development token for the chat relay")
    ap.add_argument("--user", required=True, help="identity placed in the 'id' claim")
    ap.add_argument("--secret", default=os.getenv("JWT_SECRET", "dev_secret"))
    ap.add_argument("--ttl", type=int, default=3600, help="lifetime in seconds (0 = no expiry)")
    ap.add_argument("--alg", default="HS256", choices=sorted(HMAC_ALGORITHMS))
    args = ap.parse_args()

    now = int(time.time())
    claims = {"id": args.user, "iat": now}
    if args.ttl > 0:
        claims["exp"] = now + args.ttl
    print(encode_token(claims, args.secret, algorithm=args.alg))

if __name__ == "__main__":
    main()
