"""Mail relay launcher: starts Uvicorn."""
import os


def main() -> None:
    import uvicorn

    uvicorn.run(
        "mailrelay.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    main()
