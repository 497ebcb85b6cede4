from gevent import monkey

# must run before docker, requests or flask open any sockets
monkey.patch_all()

from roomfarm.app import main  # noqa: E402

if __name__ == '__main__':
    main()
