import argparse
import mimetypes
import os
import sys

import requests

API_URL = os.getenv("API_URL", "http://localhost:9000")


def predict_image(base_url, image_path, prediction_id):
    content_type = mimetypes.guess_type(image_path)[0] or "application/octet-stream"
    with open(image_path, "rb") as img_file:
        files = {"image": (os.path.basename(image_path), img_file, content_type)}
        response = requests.post(f"{base_url}/predict/{prediction_id}", files=files, timeout=60)

    body = response.json()
    if response.status_code == 200:
        data = body["data"]
        print(f"✅ Prediction {data['id']}: {data['result']} (confidence {data['confidenceScore']:.4f})")
        print(f"   Image: {data['imageUrl']}")
        return True
    print(f"❌ Failed: {response.status_code} - {body.get('message')} {body.get('error', '')}")
    return False


def run_health_check(base_url):
    response = requests.get(f"{base_url}/", timeout=10)
    if response.status_code == 200:
        print(f"✅ Health Check Passed: {response.text}")
        return True
    print(f"❌ Health Check Failed: {response.status_code} - {response.text}")
    return False


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", default=API_URL, help="Base URL of the prediction service")
    parser.add_argument("--image", type=str, help="Path to image for prediction")
    parser.add_argument("--id", default="local-test", help="Prediction id to store the result under")
    parser.add_argument("--test", action="store_true", help="Run the health check")

    args = parser.parse_args()

    if args.test:
        ok = run_health_check(args.url)
    elif args.image:
        if not os.path.exists(args.image):
            print(f"❌ Image not found: {args.image}")
            ok = False
        else:
            ok = predict_image(args.url, args.image, args.id)
    else:
        print("❌ Please provide --image <path> or --test")
        ok = False
    sys.exit(0 if ok else 1)
